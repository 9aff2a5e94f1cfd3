"""
Session Registry - 会话注册表
负责管理在线的 ChatSession、超时控制和后台清理
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ..config.settings import get_settings
from ..models.chat import Language
from ..models.session import SessionContext
from ..storage.base import RecordStore
from .chat_session import ChatSession
from .model_invocation import ModelInvocationService
from .navigation import RecordingNavigator

logger = logging.getLogger(__name__)


@dataclass
class RegisteredSession:
    """
    注册表条目

    Attributes:
        session_id: 注册表中的唯一标识
        context: 会话所属的用户上下文
        chat: 会话状态机
        created_at: 创建时间戳
    """
    session_id: str
    context: SessionContext
    chat: ChatSession
    created_at: float = field(default_factory=time.time)

    @property
    def navigator(self) -> RecordingNavigator:
        return self.chat.navigator

    def is_expired(self, timeout: int) -> bool:
        """
        检查会话是否过期

        Args:
            timeout: 超时时间（秒）
        """
        return (time.time() - self.chat.last_activity) > timeout

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.context.user_id,
            "phase": self.chat.phase.value,
            "created_at": datetime.fromtimestamp(self.created_at).isoformat(),
            "last_active": datetime.fromtimestamp(self.chat.last_activity).isoformat(),
        }


class SessionRegistry:
    """
    会话注册表

    职责：
    1. 创建和删除会话（每个会话一个 ChatSession）
    2. 会话超时检测和清理
    3. 会话查询
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        invoker: Optional[ModelInvocationService] = None
    ):
        self.settings = get_settings()
        self.store = store
        self.invoker = invoker
        self.sessions: Dict[str, RegisteredSession] = {}

        self.cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_running = False

    def configure(self, store: RecordStore, invoker: ModelInvocationService) -> None:
        """绑定存储与模型调用服务（应用启动时调用）"""
        self.store = store
        self.invoker = invoker
        logger.info(f"Session registry configured (store={type(store).__name__}, invoker={type(invoker).__name__})")

    async def start_cleanup_task(self):
        """启动会话清理任务（后台运行）"""
        if self._cleanup_running:
            logger.warning("Cleanup task already running")
            return

        self._cleanup_running = True
        self.cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Session cleanup task started")

    async def stop_cleanup_task(self):
        """停止会话清理任务"""
        if self.cleanup_task:
            self._cleanup_running = False
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass
            self.cleanup_task = None
            logger.info("Session cleanup task stopped")

    async def _cleanup_loop(self):
        """会话清理循环（每分钟检查一次）"""
        while self._cleanup_running:
            try:
                await asyncio.sleep(60)
                await self.cleanup_expired_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Session cleanup failed: {e}")

    async def cleanup_expired_sessions(self) -> int:
        """
        清理过期会话

        Returns:
            清理的会话数量
        """
        timeout = self.settings.SESSION_TIMEOUT
        expired = [
            session_id
            for session_id, entry in self.sessions.items()
            if entry.is_expired(timeout)
        ]

        for session_id in expired:
            await self.delete_session(session_id)

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")

        return len(expired)

    def create_session(self, context: SessionContext) -> RegisteredSession:
        """
        创建新会话

        Args:
            context: 已认证的用户上下文

        Returns:
            注册表条目（ChatSession 尚未 initialize）

        Raises:
            RuntimeError: 注册表未绑定存储或模型调用服务
        """
        if self.store is None or self.invoker is None:
            raise RuntimeError("Session registry is not configured")

        chat = ChatSession(
            store=self.store,
            invoker=self.invoker,
            navigator=RecordingNavigator(),
            default_language=Language(self.settings.DEFAULT_LANGUAGE),
            chat_prefix=self.settings.CHAT_ROUTE_PREFIX,
            fallback_route=self.settings.FALLBACK_ROUTE,
        )
        entry = RegisteredSession(
            session_id=str(uuid.uuid4()),
            context=context,
            chat=chat,
        )
        self.sessions[entry.session_id] = entry
        logger.info(f"Created session {entry.session_id} (user: {context.user_id})")
        return entry

    def get_session(self, session_id: str) -> Optional[RegisteredSession]:
        """获取会话（并刷新活跃时间）"""
        entry = self.sessions.get(session_id)
        if entry:
            entry.chat.touch()
        return entry

    async def delete_session(self, session_id: str) -> bool:
        """
        删除会话

        Returns:
            是否成功删除
        """
        entry = self.sessions.pop(session_id, None)
        if entry is None:
            logger.warning(f"Session not found: {session_id}")
            return False

        await entry.chat.close()
        logger.info(f"Deleted session {session_id}")
        return True

    def get_session_count(self) -> int:
        return len(self.sessions)

    def get_statistics(self) -> dict:
        phases: Dict[str, int] = {}
        for entry in self.sessions.values():
            phases[entry.chat.phase.value] = phases.get(entry.chat.phase.value, 0) + 1
        return {
            "total_sessions": len(self.sessions),
            "phases": phases,
            "cleanup_running": self._cleanup_running,
        }

    async def close(self) -> None:
        """停止清理任务并关闭所有会话"""
        await self.stop_cleanup_task()
        for session_id in list(self.sessions):
            await self.delete_session(session_id)


# 单例实例
_session_registry_instance: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    """
    获取会话注册表单例

    Returns:
        SessionRegistry 实例
    """
    global _session_registry_instance
    if _session_registry_instance is None:
        _session_registry_instance = SessionRegistry()
    return _session_registry_instance


__all__ = [
    "RegisteredSession",
    "SessionRegistry",
    "get_session_registry"
]
