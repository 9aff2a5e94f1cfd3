"""
Storage Base - 存储层抽象接口
Record store contract for agents, conversations and messages.
Implementations: RedisRecordStore (primary), MemoryRecordStore (fallback / tests).
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Union

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


class RecordStore(ABC):
    """
    Record store 抽象接口

    Read side (used by the chat session):
    - get_agent / get_conversation / list_conversations / list_messages
    - update_conversation (title, language)

    Write side (used by the direct model invocation service):
    - create_conversation / append_message / touch_conversation

    All methods raise RecordStoreError on backend failure.
    get_conversation and update_conversation raise AccessDeniedError when the
    conversation exists but belongs to another user or agent.
    """

    @abstractmethod
    async def connect(self) -> None:
        """建立存储连接"""
        pass

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        """
        获取 Agent 配置

        Returns:
            Agent，如果不存在返回 None
        """
        pass

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        """保存 Agent 配置"""
        pass

    @abstractmethod
    async def get_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        agent_id: str
    ) -> Optional[Conversation]:
        """
        获取会话（校验归属）

        Args:
            conversation_id: 会话ID
            user_id: 请求用户
            agent_id: 会话所属 Agent

        Returns:
            Conversation，如果不存在返回 None
        """
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, agent_id: str) -> List[Conversation]:
        """
        列出用户与某 Agent 的所有会话

        Returns:
            按 updated_at 倒序排列的会话列表
        """
        pass

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: DurableId
    ) -> List[Union[UserMessage, AgentMessage]]:
        """
        列出会话的全部消息

        Returns:
            按 created_at 正序排列的消息列表
        """
        pass

    @abstractmethod
    async def update_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        patch: ConversationPatch
    ) -> Conversation:
        """
        更新会话标题 / 语言

        Returns:
            更新后的 Conversation
        """
        pass

    @abstractmethod
    async def create_conversation(
        self,
        user_id: str,
        agent_id: str,
        title: str,
        language: Language
    ) -> Conversation:
        """创建会话，返回带 DurableId 的记录"""
        pass

    @abstractmethod
    async def append_message(
        self,
        conversation_id: DurableId,
        role: MessageRole,
        content: str
    ) -> Union[UserMessage, AgentMessage]:
        """追加消息，返回带 DurableId 的记录"""
        pass

    @abstractmethod
    async def touch_conversation(self, conversation_id: DurableId, user_id: str) -> None:
        """刷新会话 updated_at"""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        健康检查

        Returns:
            存储后端是否健康
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        关闭存储连接
        """
        pass
