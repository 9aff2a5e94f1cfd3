"""
Identifier spaces for chat records

Two identity spaces coexist inside a chat session:

- LocalId: minted by the session for optimistic display before the server answers.
  Never written to the record store.
- DurableId: assigned and persisted by the record store (conversations, messages).

A message that belongs to a conversation which does not exist yet points at the
DRAFT_CONVERSATION sentinel instead of a DurableId. Reconciliation replaces that
foreign key with the durable conversation id once it is known.
"""

import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class LocalId(BaseModel):
    """Session-local identifier (optimistic messages, synthesized intro)"""
    kind: Literal["local"] = "local"
    value: str

    class Config:
        frozen = True

    @classmethod
    def new(cls) -> "LocalId":
        return cls(value=f"local-{uuid.uuid4().hex}")

    def __str__(self) -> str:
        return self.value


class DurableId(BaseModel):
    """Identifier assigned by the record store"""
    kind: Literal["durable"] = "durable"
    value: str

    class Config:
        frozen = True

    def __str__(self) -> str:
        return self.value


class DraftConversation(BaseModel):
    """Foreign-key placeholder for messages sent before a conversation exists"""
    kind: Literal["draft"] = "draft"

    class Config:
        frozen = True

    def __str__(self) -> str:
        return "draft"


DRAFT_CONVERSATION = DraftConversation()

MessageId = Annotated[Union[LocalId, DurableId], Field(discriminator="kind")]
ConversationRef = Annotated[Union[DurableId, DraftConversation], Field(discriminator="kind")]


def is_draft(ref) -> bool:
    """True when the reference is the draft sentinel"""
    return isinstance(ref, DraftConversation)


__all__ = [
    "LocalId",
    "DurableId",
    "DraftConversation",
    "DRAFT_CONVERSATION",
    "MessageId",
    "ConversationRef",
    "is_draft",
]
