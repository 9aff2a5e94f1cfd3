"""
Conversation Directory - 会话列表缓存

Holds the conversations of one (user, agent) pair, most recently updated first.

职责：
1. load: fetch the list (fails open: empty list + notification)
2. prepend: integrate a conversation born mid-session without a round trip
3. refresh: re-fetch after an exchange moved updated_at (failures are logged only)
4. update: replace one entry in place after a rename / language switch
"""

import logging
from typing import List, Optional

from tutorchat.errors import TutorChatError
from tutorchat.models.chat import Conversation
from tutorchat.models.identifiers import DurableId
from tutorchat.storage.base import RecordStore

from .notifier import Notifier

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Erro ao carregar histórico de conversas."


class ConversationDirectory:
    """Cached, ordered conversation list for one (user_id, agent_id)"""

    def __init__(self, store: RecordStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier
        self.user_id: Optional[str] = None
        self.agent_id: Optional[str] = None
        self._conversations: List[Conversation] = []
        self.loading = False

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: DurableId) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def load(self, user_id: str, agent_id: str) -> List[Conversation]:
        """
        加载会话列表

        Args:
            user_id: 用户ID
            agent_id: Agent ID

        Returns:
            按 updated_at 倒序的会话列表；存储出错时返回空列表并发出通知
        """
        if (user_id, agent_id) != (self.user_id, self.agent_id):
            self._conversations = []
        self.user_id = user_id
        self.agent_id = agent_id

        self.loading = True
        try:
            self._conversations = list(await self.store.list_conversations(user_id, agent_id))
            logger.debug(
                f"Loaded {len(self._conversations)} conversations (user={user_id}, agent={agent_id})"
            )
        except TutorChatError as e:
            logger.error(f"Failed to load conversations for user={user_id}, agent={agent_id}: {e}")
            self._conversations = []
            if self.notifier:
                self.notifier.error(LOAD_ERROR_MESSAGE)
        finally:
            self.loading = False

        return self.conversations

    def prepend(self, conversation: Conversation) -> None:
        """Insert a conversation at the head, dropping any stale entry with the same id"""
        self._conversations = [
            conv for conv in self._conversations if conv.id != conversation.id
        ]
        self._conversations.insert(0, conversation)
        logger.debug(f"Prepended conversation {conversation.id} to directory")

    def update(self, conversation: Conversation) -> bool:
        """Replace the entry with the same id, keeping its position"""
        for index, conv in enumerate(self._conversations):
            if conv.id == conversation.id:
                self._conversations[index] = conversation
                return True
        return False

    async def refresh(
        self,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None
    ) -> bool:
        """
        重新拉取会话列表

        The directory is advisory; a failed refresh keeps the cached list and
        is never surfaced to the user.

        Returns:
            是否刷新成功
        """
        user_id = user_id or self.user_id
        agent_id = agent_id or self.agent_id
        if user_id is None or agent_id is None:
            logger.debug("Directory refresh skipped: not loaded yet")
            return False

        try:
            conversations = await self.store.list_conversations(user_id, agent_id)
        except TutorChatError as e:
            logger.warning(f"Directory refresh failed (user={user_id}, agent={agent_id}): {e}")
            return False

        if (user_id, agent_id) != (self.user_id, self.agent_id):
            logger.debug("Directory refresh result discarded: directory re-keyed meanwhile")
            return False

        self._conversations = list(conversations)
        return True


__all__ = [
    "ConversationDirectory",
    "LOAD_ERROR_MESSAGE",
]
