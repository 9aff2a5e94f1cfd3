"""
Session数据模型 - chat session state exposed to the presentation layer

Data structures:
- SessionPhase: Loading / DraftConversation / ActiveConversation / Sending (+ Redirected)
- SessionContext: authenticated caller, injected into ChatSession.initialize()
- Notification: transient user-facing message (toast)
- SessionSnapshot: read-only view of one session
"""

from enum import Enum
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from .chat import Agent, ChatMessage, Conversation, Language, DEFAULT_LANGUAGE


class SessionPhase(str, Enum):
    """Chat session states"""
    LOADING = "loading"
    DRAFT = "draft_conversation"  # 尚未绑定持久会话
    ACTIVE = "active_conversation"  # 已绑定 conversation id
    SENDING = "sending"  # 调用模型中（瞬态）
    REDIRECTED = "redirected"  # initialize 失败，已跳转到安全页面


class SessionContext(BaseModel):
    """
    Authenticated caller of a chat session

    Attributes:
        user_id: authenticated user ID
        permission: permission tier name (Free, Pro, Prof, Admin)
    """
    user_id: str = Field(..., description="Authenticated user ID")
    permission: Optional[str] = Field(None, description="Permission tier name")

    class Config:
        frozen = True

    @property
    def is_pro(self) -> bool:
        return self.permission in ("Pro", "Prof", "Admin")

    def can_use(self, agent: Agent) -> bool:
        """
        Agent access rule

        Standard agents need a paid tier and must not have an owner;
        personal agents are usable by their owner only.
        """
        if agent.is_standard:
            return agent.user_id is None and self.is_pro
        return agent.user_id == self.user_id


class NotificationLevel(str, Enum):
    """Notification severity"""
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Notification(BaseModel):
    """Transient user-facing notification"""
    level: NotificationLevel
    message: str
    created_at: datetime = Field(default_factory=datetime.now)


class SessionSnapshot(BaseModel):
    """
    Read-only observable of a chat session

    `phase` is SENDING while an invocation is in flight; `sending` mirrors it
    for the typing indicator.
    """
    phase: SessionPhase
    sending: bool = False
    agent: Optional[Agent] = None
    conversation: Optional[Conversation] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    conversation_list: List[Conversation] = Field(default_factory=list)
    language: Language = DEFAULT_LANGUAGE
    title_draft: Optional[str] = None
    notifications: List[Notification] = Field(default_factory=list)


__all__ = [
    "SessionPhase",
    "SessionContext",
    "NotificationLevel",
    "Notification",
    "SessionSnapshot",
]
