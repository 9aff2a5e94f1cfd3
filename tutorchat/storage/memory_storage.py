"""
Memory Storage - 基于内存的 record store
Used when Redis is unavailable and as the test double of the chat core.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Union

from tutorchat.errors import AccessDeniedError, NotFoundError
from tutorchat.models.chat import (
    Agent,
    AgentMessage,
    Conversation,
    ConversationPatch,
    Language,
    MessageRole,
    UserMessage,
)
from tutorchat.models.identifiers import DurableId

from .base import RecordStore

logger = logging.getLogger(__name__)


class MemoryRecordStore(RecordStore):
    """
    基于内存的 record store（降级方案）

    Process-local, not shared between workers, lost on restart.
    """

    def __init__(self):
        self._agents: Dict[str, Agent] = {}
        self._conversations: Dict[DurableId, Conversation] = {}
        self._messages: Dict[DurableId, List[Union[UserMessage, AgentMessage]]] = {}
        logger.info("MemoryRecordStore initialized")

    async def connect(self) -> None:
        return None

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent

    def _owned_conversation(self, conversation_id: DurableId, user_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", str(conversation_id))
        if conversation.user_id != user_id:
            raise AccessDeniedError("conversation", str(conversation_id), "owned by another user")
        return conversation

    async def get_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        agent_id: str
    ) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        if conversation.user_id != user_id or conversation.agent_id != agent_id:
            raise AccessDeniedError("conversation", str(conversation_id), "user/agent mismatch")
        return conversation

    async def list_conversations(self, user_id: str, agent_id: str) -> List[Conversation]:
        matches = [
            conv for conv in self._conversations.values()
            if conv.user_id == user_id and conv.agent_id == agent_id
        ]
        return sorted(matches, key=lambda conv: conv.updated_at, reverse=True)

    async def list_messages(
        self,
        conversation_id: DurableId
    ) -> List[Union[UserMessage, AgentMessage]]:
        # 追加顺序即创建顺序，sorted 稳定，同一毫秒内保持插入顺序
        messages = self._messages.get(conversation_id, [])
        return sorted(messages, key=lambda msg: msg.created_at)

    async def update_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        patch: ConversationPatch
    ) -> Conversation:
        conversation = self._owned_conversation(conversation_id, user_id)
        update = patch.model_dump(exclude_none=True)
        if update:
            update["updated_at"] = datetime.now()
            conversation = conversation.model_copy(update=update)
            self._conversations[conversation_id] = conversation
            logger.debug(f"[内存] 更新会话 {conversation_id}: {sorted(update)}")
        return conversation

    async def create_conversation(
        self,
        user_id: str,
        agent_id: str,
        title: str,
        language: Language
    ) -> Conversation:
        conversation = Conversation(
            id=DurableId(value=str(uuid.uuid4())),
            user_id=user_id,
            agent_id=agent_id,
            title=title,
            language=language,
        )
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        logger.debug(f"[内存] 创建会话 {conversation.id} (user={user_id}, agent={agent_id})")
        return conversation

    async def append_message(
        self,
        conversation_id: DurableId,
        role: MessageRole,
        content: str
    ) -> Union[UserMessage, AgentMessage]:
        if conversation_id not in self._conversations:
            raise NotFoundError("conversation", str(conversation_id))

        message_id = DurableId(value=str(uuid.uuid4()))
        if role == MessageRole.USER:
            message = UserMessage(id=message_id, conversation_id=conversation_id, content=content)
        elif role == MessageRole.AGENT:
            message = AgentMessage(id=message_id, conversation_id=conversation_id, content=content)
        else:
            raise ValueError(f"Role {role} is never persisted")

        self._messages.setdefault(conversation_id, []).append(message)
        return message

    async def touch_conversation(self, conversation_id: DurableId, user_id: str) -> None:
        conversation = self._owned_conversation(conversation_id, user_id)
        self._conversations[conversation_id] = conversation.model_copy(
            update={"updated_at": datetime.now()}
        )

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
