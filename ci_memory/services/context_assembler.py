"""Bounded prompt context from stored conversation history"""
import json
import logging
from typing import List

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from ci_memory.core.models import Message, MessageRole
from ci_memory.services.conversation_store import ConversationStore


logger = logging.getLogger(__name__)


class ContextWindowAssembler:
    """Keep-most-recent window of a conversation plus the pending message"""

    def __init__(self, store: ConversationStore, window_size: int = 100):
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.store = store
        self.window_size = window_size

    def assemble(self, conversation_id: str, window_size: int, pending_message: Message) -> List[Message]:
        """History window followed by `pending_message`, which appears exactly once"""
        history = self.store.recent(conversation_id, window_size)
        if pending_message.is_persisted:
            # write-ahead already stored it; keep only the copy at the end
            history = [m for m in history if m.id != pending_message.id]
        window = history + [pending_message]
        logger.debug(f"Assembled {len(window)} messages for {conversation_id} (window={window_size})")
        return window

    def assemble_default(self, conversation_id: str, pending_message: Message) -> List[Message]:
        return self.assemble(conversation_id, self.window_size, pending_message)

    @staticmethod
    def to_chat_messages(messages: List[Message]) -> List[BaseMessage]:
        """SOURCE -> human turns, ANALYSIS -> assistant turns"""
        chat = []
        for message in messages:
            text = json.dumps(message.content, default=str)
            if message.role == MessageRole.ANALYSIS:
                chat.append(AIMessage(content=text))
            else:
                chat.append(HumanMessage(content=text))
        return chat
