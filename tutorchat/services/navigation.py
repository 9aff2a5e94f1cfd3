"""
Navigation - address of the chat screen

Routes:
    {prefix}/{agent_id}                     draft conversation
    {prefix}/{agent_id}/{conversation_id}   resumable conversation
    {fallback}                              agent list (agent missing / denied)
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CHAT_PREFIX = "/ai-chat"
DEFAULT_FALLBACK_ROUTE = "/language-models"


def chat_route(
    agent_id: str,
    conversation_id: Optional[str] = None,
    prefix: str = DEFAULT_CHAT_PREFIX
) -> str:
    """
    Build the chat address for an agent (and optionally a conversation)

    Example:
        chat_route("agent-1")          -> "/ai-chat/agent-1"
        chat_route("agent-1", "c-9")   -> "/ai-chat/agent-1/c-9"
    """
    if conversation_id:
        return f"{prefix}/{agent_id}/{conversation_id}"
    return f"{prefix}/{agent_id}"


class Navigator(ABC):
    """External router seen by the chat session"""

    @abstractmethod
    def navigate(self, path: str, replace: bool = False) -> None:
        """
        Move the presentation layer to `path`

        Args:
            path: target address
            replace: replace the current history entry instead of pushing
        """
        pass


class RecordingNavigator(Navigator):
    """Navigator that keeps the address history in memory (API sessions, tests)"""

    def __init__(self, initial: Optional[str] = None):
        self.history: List[Tuple[str, bool]] = []
        self.current: Optional[str] = initial

    def navigate(self, path: str, replace: bool = False) -> None:
        self.history.append((path, replace))
        self.current = path
        logger.debug(f"Navigate -> {path} (replace={replace})")


__all__ = [
    "DEFAULT_CHAT_PREFIX",
    "DEFAULT_FALLBACK_ROUTE",
    "chat_route",
    "Navigator",
    "RecordingNavigator",
]
