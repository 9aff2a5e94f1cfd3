"""
Redis Storage - 基于 Redis 的 record store 实现

Key 设计：
- {prefix}agent:{agent_id} -> Agent JSON
- {prefix}conversation:{conversation_id} -> HASH(id, user_id, agent_id, title, language, created_at, updated_at)
- {prefix}user_conversations:{user_id}:{agent_id} -> ZSET(conversation_id, score=updated_at)
- {prefix}messages:{conversation_id} -> LIST[Message JSON]（追加顺序 = 创建顺序）

会话用 HASH 存储：改名、改语言、刷新时间戳都只 HSET 自己的字段，
并发写入不会互相覆盖
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import redis.asyncio as aioredis
from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

from tutorchat.errors import AccessDeniedError, NotFoundError, RecordStoreError
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

_stored_message = TypeAdapter(Union[UserMessage, AgentMessage])


def _conversation_fields(conversation: Conversation) -> Dict[str, str]:
    return {
        "id": conversation.id.value,
        "user_id": conversation.user_id,
        "agent_id": conversation.agent_id,
        "title": conversation.title,
        "language": conversation.language.value,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


def _conversation_from_fields(fields: Dict[str, Any]) -> Conversation:
    data = dict(fields)
    data["id"] = {"value": data.get("id")}
    return Conversation.model_validate(data)


class RedisRecordStore(RecordStore):
    """
    基于 Redis 的 record store

    特性：
    - 会话列表使用有序集合，按 updated_at 倒序读取
    - 消息使用列表，保持插入顺序
    - 连接池管理
    """

    def __init__(
        self,
        redis_url: str = "redis://127.0.0.1:6379/0",
        key_prefix: str = "tutorchat:",
        max_connections: int = 10,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[aioredis.Redis] = None
    ):
        """
        初始化 Redis 存储

        Args:
            redis_url: Redis 连接 URL
            key_prefix: Redis key 前缀
            max_connections: 最大连接数
            username: Redis ACL 用户名（可选）
            password: Redis 密码（可选）
            client: 已创建的 Redis 客户端（可选，主要用于测试）
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_connections = max_connections
        self.username = username
        self.password = password
        self.redis: Optional[aioredis.Redis] = client
        self._connected = False

        auth_status = "启用" if password else "未启用"
        logger.info("初始化 RedisRecordStore: %s, 认证%s", redis_url, auth_status)

    async def connect(self) -> None:
        """建立 Redis 连接"""
        if self._connected and self.redis:
            return

        try:
            if self.redis is None:
                connection_kwargs = {
                    "encoding": "utf-8",
                    "decode_responses": True,
                    "max_connections": self.max_connections
                }
                if self.username:
                    connection_kwargs["username"] = self.username
                if self.password:
                    connection_kwargs["password"] = self.password

                self.redis = aioredis.from_url(self.redis_url, **connection_kwargs)

            # 测试连接
            await self.redis.ping()
            self._connected = True
            logger.info("✅ Redis 连接成功")
        except RedisConnectionError as e:
            logger.error(f"❌ Redis 连接失败: {e}")
            self._connected = False
            raise RecordStoreError(f"Redis connection failed: {e}") from e
        except RedisError as e:
            logger.error(f"❌ Redis 初始化失败: {e}")
            self._connected = False
            raise RecordStoreError(f"Redis initialization failed: {e}") from e

    def _require_connection(self) -> aioredis.Redis:
        if not self._connected or not self.redis:
            raise RecordStoreError("Redis 未连接")
        return self.redis

    def _agent_key(self, agent_id: str) -> str:
        return f"{self.key_prefix}agent:{agent_id}"

    def _conversation_key(self, conversation_id: DurableId) -> str:
        return f"{self.key_prefix}conversation:{conversation_id.value}"

    def _index_key(self, user_id: str, agent_id: str) -> str:
        return f"{self.key_prefix}user_conversations:{user_id}:{agent_id}"

    def _messages_key(self, conversation_id: DurableId) -> str:
        return f"{self.key_prefix}messages:{conversation_id.value}"

    async def _load_conversation(self, conversation_id: DurableId) -> Optional[Conversation]:
        redis = self._require_connection()
        fields = await redis.hgetall(self._conversation_key(conversation_id))
        if not fields:
            return None
        try:
            return _conversation_from_fields(fields)
        except ValidationError as e:
            logger.error(f"会话 {conversation_id} 数据损坏: {e}")
            raise RecordStoreError(f"Malformed conversation {conversation_id}: {e}") from e

    async def _write_conversation_fields(
        self,
        conversation: Conversation,
        fields: Dict[str, str],
        updated_at: datetime
    ) -> None:
        """只写入给定字段，并刷新列表索引的排序分数"""
        redis = self._require_connection()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._conversation_key(conversation.id), mapping=fields)
            pipe.zadd(
                self._index_key(conversation.user_id, conversation.agent_id),
                {conversation.id.value: updated_at.timestamp()}
            )
            await pipe.execute()

    async def _owned_conversation(self, conversation_id: DurableId, user_id: str) -> Conversation:
        conversation = await self._load_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", str(conversation_id))
        if conversation.user_id != user_id:
            raise AccessDeniedError("conversation", str(conversation_id), "owned by another user")
        return conversation

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        redis = self._require_connection()
        try:
            data = await redis.get(self._agent_key(agent_id))
        except RedisError as e:
            logger.error(f"Redis 读取失败: {e}")
            raise RecordStoreError(f"Failed to load agent {agent_id}: {e}") from e

        if not data:
            logger.debug(f"Agent {agent_id} 不存在")
            return None
        try:
            return Agent.model_validate_json(data)
        except ValidationError as e:
            logger.error(f"Agent {agent_id} 数据损坏: {e}")
            raise RecordStoreError(f"Malformed agent {agent_id}: {e}") from e

    async def save_agent(self, agent: Agent) -> None:
        redis = self._require_connection()
        try:
            await redis.set(self._agent_key(agent.id), agent.model_dump_json())
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise RecordStoreError(f"Failed to save agent {agent.id}: {e}") from e

    async def get_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        agent_id: str
    ) -> Optional[Conversation]:
        try:
            conversation = await self._load_conversation(conversation_id)
        except RedisError as e:
            logger.error(f"Redis 读取失败: {e}")
            raise RecordStoreError(f"Failed to load conversation {conversation_id}: {e}") from e

        if conversation is None:
            return None
        if conversation.user_id != user_id or conversation.agent_id != agent_id:
            raise AccessDeniedError("conversation", str(conversation_id), "user/agent mismatch")
        return conversation

    async def list_conversations(self, user_id: str, agent_id: str) -> List[Conversation]:
        redis = self._require_connection()
        try:
            ids = await redis.zrevrange(self._index_key(user_id, agent_id), 0, -1)
            if not ids:
                return []
            async with redis.pipeline(transaction=False) as pipe:
                for conv_id in ids:
                    pipe.hgetall(self._conversation_key(DurableId(value=conv_id)))
                records = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis 扫描失败: {e}")
            raise RecordStoreError(f"Failed to list conversations: {e}") from e

        # 索引中可能残留已删除会话
        try:
            conversations = [
                _conversation_from_fields(fields)
                for fields in records
                if fields
            ]
        except ValidationError as e:
            logger.error(f"会话列表数据损坏 (user={user_id}, agent={agent_id}): {e}")
            raise RecordStoreError(f"Malformed conversation in list: {e}") from e
        logger.debug(f"加载了 {len(conversations)} 个会话 (user={user_id}, agent={agent_id})")
        return conversations

    async def list_messages(
        self,
        conversation_id: DurableId
    ) -> List[Union[UserMessage, AgentMessage]]:
        redis = self._require_connection()
        try:
            payloads = await redis.lrange(self._messages_key(conversation_id), 0, -1)
        except RedisError as e:
            logger.error(f"Redis 读取失败: {e}")
            raise RecordStoreError(f"Failed to list messages of {conversation_id}: {e}") from e

        try:
            return [_stored_message.validate_json(payload) for payload in payloads]
        except ValidationError as e:
            logger.error(f"消息数据损坏 ({conversation_id}): {e}")
            raise RecordStoreError(f"Malformed message in {conversation_id}: {e}") from e

    async def update_conversation(
        self,
        conversation_id: DurableId,
        user_id: str,
        patch: ConversationPatch
    ) -> Conversation:
        try:
            conversation = await self._owned_conversation(conversation_id, user_id)
            update = patch.model_dump(exclude_none=True)
            if not update:
                return conversation

            updated_at = datetime.now()
            fields = patch.model_dump(mode="json", exclude_none=True)
            fields["updated_at"] = updated_at.isoformat()
            await self._write_conversation_fields(conversation, fields, updated_at)
            update["updated_at"] = updated_at
            conversation = conversation.model_copy(update=update)
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise RecordStoreError(f"Failed to update conversation {conversation_id}: {e}") from e

        logger.debug(f"更新会话 {conversation_id}: {sorted(update)}")
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
        try:
            await self._write_conversation_fields(
                conversation, _conversation_fields(conversation), conversation.updated_at
            )
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise RecordStoreError(f"Failed to create conversation: {e}") from e

        logger.info(f"创建会话 {conversation.id} (user={user_id}, agent={agent_id})")
        return conversation

    async def append_message(
        self,
        conversation_id: DurableId,
        role: MessageRole,
        content: str
    ) -> Union[UserMessage, AgentMessage]:
        message_id = DurableId(value=str(uuid.uuid4()))
        if role == MessageRole.USER:
            message = UserMessage(id=message_id, conversation_id=conversation_id, content=content)
        elif role == MessageRole.AGENT:
            message = AgentMessage(id=message_id, conversation_id=conversation_id, content=content)
        else:
            raise ValueError(f"Role {role} is never persisted")

        redis = self._require_connection()
        try:
            await redis.rpush(self._messages_key(conversation_id), message.model_dump_json())
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise RecordStoreError(f"Failed to append message to {conversation_id}: {e}") from e
        return message

    async def touch_conversation(self, conversation_id: DurableId, user_id: str) -> None:
        try:
            conversation = await self._owned_conversation(conversation_id, user_id)
            updated_at = datetime.now()
            await self._write_conversation_fields(
                conversation, {"updated_at": updated_at.isoformat()}, updated_at
            )
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise RecordStoreError(f"Failed to touch conversation {conversation_id}: {e}") from e

    async def health_check(self) -> bool:
        """
        健康检查

        Returns:
            Redis 是否健康
        """
        try:
            if not self.redis:
                return False
            await self.redis.ping()
            return True
        except RedisError as e:
            logger.warning(f"Redis 健康检查失败: {e}")
            return False

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self.redis:
            await self.redis.aclose()
            self._connected = False
            logger.info("Redis 连接已关闭")

    async def __aenter__(self):
        """支持 async with 语法"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """支持 async with 语法"""
        await self.close()
