from typing import Annotated, Literal, Optional

from fastapi import APIRouter, Depends, Query

from notechat.application.container import NotechatServices
from notechat.domain.models.message import Sender
from ..schema.requests import (
    CreateConversationRequest,
    CreateConversationResponse,
    EditMessageRequest,
    MessagesResponse,
    RegenerateRequest,
    SendMessageRequest,
    SendMessageResponse,
    SuccessResponse,
    TruncateRequest,
)
from .dependencies import get_services

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

Services = Annotated[NotechatServices, Depends(get_services)]


@router.post("", response_model=CreateConversationResponse)
async def create_conversation(services: Services, request: Optional[CreateConversationRequest] = None):
    request = request or CreateConversationRequest()
    manager = await services.create_conversation(request.active_note, request.project)
    return CreateConversationResponse(conversation_id=manager.conversation_id)


@router.get("/{conversation_id}/messages", response_model=MessagesResponse)
async def get_messages(
    conversation_id: str,
    services: Services,
    view: Literal["display", "llm"] = Query("display", description="display or llm projection")
):
    manager = services.get_conversation(conversation_id)
    messages = manager.get_display_messages() if view == "display" else manager.get_llm_messages()
    return MessagesResponse(view=view, messages=messages)


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(conversation_id: str, request: SendMessageRequest, services: Services):
    manager = services.get_conversation(conversation_id)
    if request.active_note is not None:
        manager.set_active_note(request.active_note)

    if request.generate:
        response = await manager.chat(
            request.text, request.context, request.chain_type, request.include_active_note
        )
        if response is not None and response.parent_id:
            message_id = response.parent_id
        else:
            message_id = [m for m in manager.get_display_messages() if m.sender == Sender.USER][-1].id
        return SendMessageResponse(message_id=message_id, response=response)

    message_id = await manager.send_message(
        request.text, request.context, request.chain_type, request.include_active_note
    )
    return SendMessageResponse(message_id=message_id)


@router.patch("/{conversation_id}/messages/{message_id}", response_model=SuccessResponse)
async def edit_message(conversation_id: str, message_id: str, request: EditMessageRequest, services: Services):
    manager = services.get_conversation(conversation_id)
    success = await manager.edit_message(message_id, request.text, request.chain_type, request.include_active_note)
    return SuccessResponse(success=success)


@router.post("/{conversation_id}/messages/{message_id}/regenerate", response_model=SuccessResponse)
async def regenerate_message(
    conversation_id: str,
    message_id: str,
    services: Services,
    request: Optional[RegenerateRequest] = None
):
    request = request or RegenerateRequest()
    manager = services.get_conversation(conversation_id)
    success = await manager.regenerate_message(message_id, request.chain_type)
    return SuccessResponse(success=success)


@router.delete("/{conversation_id}/messages/{message_id}", response_model=SuccessResponse)
async def delete_message(conversation_id: str, message_id: str, services: Services):
    manager = services.get_conversation(conversation_id)
    return SuccessResponse(success=await manager.delete_message(message_id))


@router.post("/{conversation_id}/truncate", response_model=SuccessResponse)
async def truncate_conversation(conversation_id: str, request: TruncateRequest, services: Services):
    manager = services.get_conversation(conversation_id)
    return SuccessResponse(success=await manager.truncate_after_message_id(request.message_id))


@router.delete("/{conversation_id}/messages", response_model=SuccessResponse)
async def clear_messages(conversation_id: str, services: Services):
    manager = services.get_conversation(conversation_id)
    await manager.clear_messages()
    return SuccessResponse(success=True)


@router.delete("/{conversation_id}", response_model=SuccessResponse)
async def close_conversation(conversation_id: str, services: Services):
    return SuccessResponse(success=await services.close_conversation(conversation_id))
