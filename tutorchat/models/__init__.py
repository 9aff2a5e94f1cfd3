"""
Models module for data structures
"""

from .identifiers import (
    LocalId,
    DurableId,
    DraftConversation,
    DRAFT_CONVERSATION,
    is_draft,
)
from .chat import (
    Language,
    DEFAULT_LANGUAGE,
    MessageRole,
    Agent,
    Conversation,
    ConversationPatch,
    UserMessage,
    AgentMessage,
    IntroMessage,
    ChatMessage,
    conversation_turns,
)
from .session import (
    SessionPhase,
    SessionContext,
    NotificationLevel,
    Notification,
    SessionSnapshot,
)

__all__ = [
    'LocalId',
    'DurableId',
    'DraftConversation',
    'DRAFT_CONVERSATION',
    'is_draft',
    'Language',
    'DEFAULT_LANGUAGE',
    'MessageRole',
    'Agent',
    'Conversation',
    'ConversationPatch',
    'UserMessage',
    'AgentMessage',
    'IntroMessage',
    'ChatMessage',
    'conversation_turns',
    'SessionPhase',
    'SessionContext',
    'NotificationLevel',
    'Notification',
    'SessionSnapshot',
]
