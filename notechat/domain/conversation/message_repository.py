from typing import Any, Dict, List, Optional

import structlog

from notechat.domain.errors import ValidationError
from notechat.domain.models.message import (
    ChatMessage,
    ContextEnvelope,
    MessageContext,
    Sender,
    new_message_id,
)

logger = structlog.get_logger(__name__)


class MessageRepository:
    """
    Ordered conversation turns, the single source of truth for one chat.

    Two projections are served: the display view (every turn, raw text) and
    the model view (visible, non-error turns only, read with processed_text).
    Getters always return copies.
    """

    def __init__(self):
        self.messages: List[ChatMessage] = []

    def _index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def _ids(self) -> set:
        return {message.id for message in self.messages}

    def add_message(
        self,
        raw_text: str,
        processed_text: str,
        sender: Sender,
        context: Optional[MessageContext] = None,
        parent_id: Optional[str] = None,
        is_visible: bool = True,
        is_error_message: bool = False
    ) -> str:
        """Append a turn and return its id"""

        if sender == Sender.USER and not (raw_text or "").strip():
            raise ValidationError("User message text cannot be empty")

        ids = self._ids()
        message_id = new_message_id()
        while message_id in ids:
            message_id = new_message_id()

        self.messages.append(ChatMessage(
            id=message_id,
            display_text=raw_text,
            processed_text=processed_text,
            sender=sender,
            context=context or MessageContext(),
            parent_id=parent_id,
            is_visible=is_visible,
            is_error_message=is_error_message,
        ))
        return message_id

    def add_chat_message(self, message: ChatMessage) -> str:
        """Append a complete message; a clashing id is replaced by a fresh one"""

        message = message.model_copy(deep=True)
        if message.id in self._ids():
            original_id = message.id
            message.id = new_message_id()
            logger.warning("Duplicate message id on load, reassigned", original_id=original_id, new_id=message.id)

        self.messages.append(message)
        return message.id

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        index = self._index_of(message_id)
        return self.messages[index].model_copy(deep=True) if index >= 0 else None

    def get_llm_message(self, message_id: str) -> Optional[ChatMessage]:
        """The message as the model sees it; None when hidden from the model"""

        index = self._index_of(message_id)
        if index < 0:
            return None
        message = self.messages[index]
        if not self._in_llm_view(message):
            return None
        return message.model_copy(deep=True)

    def update_processed_text(
        self,
        message_id: str,
        processed_text: str,
        context_envelope: Optional[ContextEnvelope] = None
    ) -> bool:
        index = self._index_of(message_id)
        if index < 0:
            return False

        update: Dict[str, Any] = {"processed_text": processed_text}
        if context_envelope is not None:
            update["context_envelope"] = context_envelope
        self.messages[index] = self.messages[index].model_copy(update=update)
        return True

    def update_message(self, message_id: str, **changes: Any) -> bool:
        """Replace arbitrary fields of a stored message"""

        index = self._index_of(message_id)
        if index < 0:
            return False
        self.messages[index] = self.messages[index].model_copy(update=changes)
        return True

    def edit_message(self, message_id: str, new_raw_text: str) -> bool:
        """Change the raw text; processed text is stale until reprocessed"""

        index = self._index_of(message_id)
        if index < 0:
            return False

        message = self.messages[index]
        if message.sender == Sender.USER and not (new_raw_text or "").strip():
            raise ValidationError("User message text cannot be empty")

        self.messages[index] = message.model_copy(update={"display_text": new_raw_text})
        return True

    def truncate_after(self, index: int) -> None:
        """Remove every turn strictly after position index"""

        if index < -1:
            index = -1
        del self.messages[index + 1:]

    def truncate_after_message_id(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index < 0:
            return False
        self.truncate_after(index)
        return True

    def delete_message(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index < 0:
            return False
        del self.messages[index]
        return True

    def clear(self) -> None:
        self.messages = []

    def get_display_messages(self) -> List[ChatMessage]:
        return [message.model_copy(deep=True) for message in self.messages]

    def get_llm_messages(self) -> List[ChatMessage]:
        return [message.model_copy(deep=True) for message in self.messages if self._in_llm_view(message)]

    @staticmethod
    def _in_llm_view(message: ChatMessage) -> bool:
        return message.is_visible and not message.is_error_message

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            "total_messages": len(self.messages),
            "visible_messages": sum(1 for m in self.messages if m.is_visible),
            "llm_messages": sum(1 for m in self.messages if self._in_llm_view(m)),
            "user_messages": sum(1 for m in self.messages if m.sender == Sender.USER),
            "assistant_messages": sum(1 for m in self.messages if m.sender == Sender.ASSISTANT),
            "error_messages": sum(1 for m in self.messages if m.is_error_message),
        }
