"""
Conversation Store

In-memory collection of conversations per character. Conversations live on
the client; this store stands in for the browser's local storage and is the
single writer the conversation engine persists through.
"""

import uuid
from typing import Dict, List, Optional

from core.exceptions import ConversationNotFoundError
from core.logging_config import get_logger
from core.models import (
    DEFAULT_SETTINGS,
    Character,
    Conversation,
    ConversationSettings,
    Message,
    now_ms,
)

logger = get_logger(__name__)


def short_id() -> str:
    return str(uuid.uuid4())[:8]


class ConversationStore:
    """Conversations keyed by character id"""

    def __init__(self):
        self._by_character: Dict[str, List[Conversation]] = {}

    def create(
        self, character: Character, settings: Optional[ConversationSettings] = None
    ) -> Conversation:
        """Start a new conversation seeded with the character's greeting"""
        conversations = self._by_character.setdefault(character.id, [])
        messages = []
        if character.first_mes:
            messages.append(Message(role="assistant", content=character.first_mes))

        conversation = Conversation(
            id=short_id(),
            title=f"Chat {len(conversations) + 1}",
            character_id=character.id,
            messages=messages,
            settings=(settings or DEFAULT_SETTINGS).model_copy(deep=True),
        )
        conversations.append(conversation)
        logger.info(
            f"Created conversation {conversation.id}",
            extra={"character_id": character.id, "conversation_id": conversation.id},
        )
        return conversation

    def get(self, character_id: str, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._by_character.get(character_id, []):
            if conversation.id == conversation_id:
                return conversation
        return None

    def require(self, character_id: str, conversation_id: str) -> Conversation:
        conversation = self.get(character_id, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found for character {character_id}"
            )
        return conversation

    def list(self, character_id: str) -> List[Conversation]:
        """Conversations of a character, most recently updated first"""
        return sorted(
            self._by_character.get(character_id, []),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    def update(self, character_id: str, conversation_id: str, **fields) -> Conversation:
        """Apply field changes and refresh updated_at"""
        current = self.require(character_id, conversation_id)
        updated = current.model_copy(update={**fields, "updated_at": now_ms()})

        conversations = self._by_character[character_id]
        for index, conversation in enumerate(conversations):
            if conversation.id == conversation_id:
                conversations[index] = updated
        return updated

    def rename(self, character_id: str, conversation_id: str, title: str) -> Conversation:
        title = title.strip()
        if not title:
            raise ValueError("Conversation title cannot be empty")
        return self.update(character_id, conversation_id, title=title)

    def delete(self, character_id: str, conversation_id: str) -> bool:
        conversation = self.get(character_id, conversation_id)
        if conversation is None:
            return False
        self._by_character[character_id].remove(conversation)
        logger.info(
            f"Deleted conversation {conversation_id}",
            extra={"character_id": character_id, "conversation_id": conversation_id},
        )
        return True

    def most_recent(self, character_id: str) -> Optional[Conversation]:
        conversations = self._by_character.get(character_id, [])
        if not conversations:
            return None
        return max(conversations, key=lambda c: c.updated_at)

    def propagate_settings(self, character_id: str, settings: ConversationSettings) -> int:
        """Copy settings into every conversation of a character; returns how many changed"""
        conversations = self._by_character.get(character_id, [])
        for conversation in list(conversations):
            self.update(character_id, conversation.id, settings=settings.model_copy(deep=True))
        return len(conversations)
