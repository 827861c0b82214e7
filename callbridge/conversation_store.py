"""
Caller -> conversation_id tracking.

One store lives for the lifetime of the app (created in the lifespan handler)
and is shared by the webhook handlers and the orchestrator. There is no
locking: everything runs on one event loop, so concurrent utterances for the
same caller can only race logically, and the last write wins.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)


class ConversationStore:
    """In-memory map of caller identifier to chat continuation token."""

    def __init__(self):
        self._conversations: Dict[str, str] = {}

    def get(self, caller: str) -> str:
        """Return the stored conversation_id, or "" on first contact."""
        return self._conversations.get(caller, "")

    def set(self, caller: str, conversation_id: str) -> None:
        previous = self._conversations.get(caller)
        self._conversations[caller] = conversation_id
        if previous and previous != conversation_id:
            logger.debug(f"Conversation for {caller} replaced: {previous} -> {conversation_id}")

    def clear(self) -> None:
        self._conversations.clear()

    def __contains__(self, caller: object) -> bool:
        return caller in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)
