"""
Message Reconciler - binds optimistic local state to durable identifiers

Input: the optimistic user message of one send (LocalId, conversation ref
DRAFT or durable) and the invocation result.

Algorithm:
1. Draft session + result carries a new conversation id and title:
   build the Conversation locally, prepend it to the directory and rewrite the
   pending user message's conversation ref from DRAFT to the durable id
   (the message id itself is unchanged).
2. Active session: the result must not name a different conversation; the
   reply is attached to the current one.
3. In both cases the reply is appended as an AgentMessage with a LocalId.

A draft result without id/title, or an active result pointing at another
conversation, raises ReconciliationError; the caller handles it exactly like
an invocation failure. Nothing is mutated before validation passes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from tutorchat.errors import ReconciliationError
from tutorchat.models.chat import (
    AgentMessage,
    ChatMessage,
    Conversation,
    Language,
    UserMessage,
)
from tutorchat.models.identifiers import LocalId, is_draft

from .conversation_directory import ConversationDirectory
from .model_invocation import InvocationResult

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    """
    Result of reconciling one send

    Attributes:
        conversation: conversation the exchange now belongs to
        messages: full timeline to publish (pending message rebound, reply appended)
        agent_message: appended reply
        created: True when this send created the conversation
    """
    conversation: Conversation
    messages: List[ChatMessage]
    agent_message: AgentMessage
    created: bool


class MessageReconciler:
    """Resolves the identity ambiguity created by optimistic sends"""

    def __init__(self, directory: ConversationDirectory):
        self.directory = directory

    def reconcile(
        self,
        *,
        user_id: str,
        agent_id: str,
        conversation: Optional[Conversation],
        language: Language,
        messages: List[ChatMessage],
        pending: UserMessage,
        result: InvocationResult
    ) -> Reconciliation:
        """
        Bind `pending` and the reply in `result` to a durable conversation

        Args:
            user_id: owner of the session
            agent_id: agent of the session
            conversation: current conversation (None = draft)
            language: language the new conversation is created with
            messages: current timeline (contains `pending`)
            pending: optimistic user message of this send
            result: invocation result

        Returns:
            Reconciliation to apply atomically

        Raises:
            ReconciliationError: the result cannot be bound consistently
        """
        now = datetime.now()

        if not any(message.id == pending.id for message in messages):
            raise ReconciliationError(f"Pending message {pending.id} is not in the timeline")

        if conversation is None:
            title = (result.new_conversation_title or "").strip()
            if result.new_conversation_id is None or not title:
                raise ReconciliationError(
                    "Draft send returned no conversation id/title",
                    user_message="A resposta do modelo não identificou a nova conversa."
                )
            if not is_draft(pending.conversation_id):
                raise ReconciliationError(f"Pending message {pending.id} is not a draft message")

            conversation = Conversation(
                id=result.new_conversation_id,
                user_id=user_id,
                agent_id=agent_id,
                title=title,
                language=language,
                created_at=now,
                updated_at=now,
            )
            timeline = [
                message.model_copy(update={"conversation_id": conversation.id})
                if message.id == pending.id else message
                for message in messages
            ]
            created = True
        else:
            if (
                result.new_conversation_id is not None
                and result.new_conversation_id != conversation.id
            ):
                raise ReconciliationError(
                    f"Reply bound to {result.new_conversation_id}, session is on {conversation.id}",
                    user_message="A resposta do modelo pertence a outra conversa."
                )
            conversation = conversation.model_copy(update={"updated_at": now})
            timeline = list(messages)
            created = False

        agent_message = AgentMessage(
            id=LocalId.new(),
            conversation_id=conversation.id,
            content=result.reply_text,
            created_at=now,
        )
        timeline.append(agent_message)

        if created:
            self.directory.prepend(conversation)
            logger.info(f"Draft reconciled into conversation {conversation.id} ({conversation.title})")
        else:
            self.directory.update(conversation)

        return Reconciliation(
            conversation=conversation,
            messages=timeline,
            agent_message=agent_message,
            created=created,
        )


__all__ = [
    "Reconciliation",
    "MessageReconciler",
]
