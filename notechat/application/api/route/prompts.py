from typing import Annotated

from fastapi import APIRouter, Depends

from notechat.application.container import NotechatServices
from notechat.domain.errors import NotFoundError
from notechat.domain.models.prompt import PromptRecord
from ..schema.requests import (
    CreatePromptRequest,
    PromptsResponse,
    SessionPromptRequest,
    SuccessResponse,
    UpdatePromptRequest,
)
from .dependencies import get_services

router = APIRouter(prefix="/api/prompts", tags=["prompts"])

Services = Annotated[NotechatServices, Depends(get_services)]


def _prompts_response(services: NotechatServices) -> PromptsResponse:
    return PromptsResponse(
        prompts=services.prompt_cache.get_cached_system_prompts(),
        default_title=services.settings_store.get().default_system_prompt_title,
        session_title=services.prompt_cache.session_prompt_title,
    )


@router.get("", response_model=PromptsResponse)
async def list_prompts(services: Services):
    return _prompts_response(services)


@router.post("", response_model=PromptRecord)
async def create_prompt(request: CreatePromptRequest, services: Services):
    return await services.prompt_manager.create_prompt(request.title, request.content)


@router.patch("/{title}", response_model=PromptRecord)
async def update_prompt(title: str, request: UpdatePromptRequest, services: Services):
    return await services.prompt_manager.update_prompt(title, request.content, request.new_title)


@router.delete("/{title}", response_model=SuccessResponse)
async def delete_prompt(title: str, services: Services):
    if not await services.prompt_manager.delete_prompt(title):
        raise NotFoundError(f"System prompt not found: {title}")
    return SuccessResponse(success=True)


@router.put("/session", response_model=PromptsResponse)
async def set_session_prompt(request: SessionPromptRequest, services: Services):
    """Select the prompt used by this session, or clear the selection"""

    if request.title and services.prompt_cache.get_cached_system_prompt(request.title) is None:
        raise NotFoundError(f"System prompt not found: {request.title}")
    services.prompt_cache.set_session_prompt_title(request.title)
    return _prompts_response(services)
