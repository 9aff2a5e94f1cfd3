"""
Chat data models - agents, conversations and messages

Data structures:
- Agent: language-model configuration the user talks to (read-only for a session)
- Conversation: durable thread between one user and one agent
- ChatMessage: closed union of UserMessage / AgentMessage / IntroMessage

Messages are immutable; the session replaces them with model_copy() when a
foreign key has to be rewritten.
"""

from enum import Enum
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .identifiers import (
    ConversationRef,
    DurableId,
    LocalId,
    MessageId,
)


class Language(str, Enum):
    """Reply language of a conversation"""
    PORTUGUESE = "Português"  # primary
    ENGLISH = "English"
    SPANISH = "Español"


DEFAULT_LANGUAGE = Language.PORTUGUESE


class MessageRole(str, Enum):
    """Sender role of a timeline entry"""
    USER = "user"
    AGENT = "agent"
    SYSTEM_INTRO = "system-intro"


class Agent(BaseModel):
    """
    Agent (model configuration)

    Loaded once per session and never mutated by the chat core.

    Standard agents have no owner and are open to paid tiers; personal agents
    belong to user_id and may carry the owner's own provider key.
    """
    id: str = Field(..., description="Model configuration ID")
    provider: str = Field(..., description="Provider name, e.g. OpenAI, Google Gemini")
    model_name: Optional[str] = Field(None, description="Display name")
    model_variant: Optional[str] = Field(None, description="Provider model variant")
    system_prompt: Optional[str] = Field(None, description="System prompt / intro text")
    avatar_url: Optional[str] = Field(None, description="Avatar reference")
    is_active: bool = Field(default=True, description="Whether the agent can be used")
    is_standard: bool = Field(default=True, description="Catalog agent (no owner)")
    user_id: Optional[str] = Field(None, description="Owner of a personal agent")
    api_key: Optional[str] = Field(None, repr=False, description="Provider key of a personal agent")

    class Config:
        frozen = True

    @property
    def display_name(self) -> str:
        return self.model_name or self.provider


class Conversation(BaseModel):
    """
    Durable conversation

    Created as a side effect of the first successful invocation in a draft session.
    title and language are user-editable; updated_at moves on every new message.
    """
    id: DurableId = Field(..., description="Conversation ID")
    user_id: str = Field(..., description="Owner user ID")
    agent_id: str = Field(..., description="Agent ID")
    title: str = Field(..., description="Conversation title")
    language: Language = Field(default=DEFAULT_LANGUAGE, description="Reply language")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
    updated_at: datetime = Field(default_factory=datetime.now, description="最后更新时间")


class ConversationPatch(BaseModel):
    """Partial update accepted by RecordStore.update_conversation"""
    title: Optional[str] = None
    language: Optional[Language] = None

    def is_empty(self) -> bool:
        return self.title is None and self.language is None


class UserMessage(BaseModel):
    """Message typed by the user"""
    role: Literal["user"] = "user"
    id: MessageId
    conversation_id: ConversationRef
    content: str
    created_at: datetime = Field(default_factory=datetime.now)

    class Config:
        frozen = True


class AgentMessage(BaseModel):
    """Reply from the agent, or a synthesized error explanation (is_error=True)"""
    role: Literal["agent"] = "agent"
    id: MessageId
    conversation_id: ConversationRef
    content: str
    created_at: datetime = Field(default_factory=datetime.now)
    is_error: bool = False

    class Config:
        frozen = True


class IntroMessage(BaseModel):
    """Intro synthesized from the agent's system prompt; never persisted"""
    role: Literal["system-intro"] = "system-intro"
    id: LocalId
    content: str
    created_at: datetime = Field(default_factory=datetime.now)

    class Config:
        frozen = True


ChatMessage = Annotated[
    Union[UserMessage, AgentMessage, IntroMessage],
    Field(discriminator="role")
]


def conversation_turns(messages: List[ChatMessage]) -> List[Union[UserMessage, AgentMessage]]:
    """
    Extract the real conversation turns from a timeline

    Drops the synthesized intro and synthesized error replies, which the
    model never produced and the store never saw.
    """
    turns = []
    for message in messages:
        if isinstance(message, UserMessage):
            turns.append(message)
        elif isinstance(message, AgentMessage) and not message.is_error:
            turns.append(message)
    return turns


__all__ = [
    "Language",
    "DEFAULT_LANGUAGE",
    "MessageRole",
    "Agent",
    "Conversation",
    "ConversationPatch",
    "UserMessage",
    "AgentMessage",
    "IntroMessage",
    "ChatMessage",
    "conversation_turns",
]
