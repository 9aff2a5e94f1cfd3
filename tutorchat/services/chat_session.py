"""
Chat Session - AI tutoring conversation state machine

States:
    LOADING -> DRAFT <-> ACTIVE -> SENDING (transient, returns to the prior state)
    LOADING -> REDIRECTED (agent / conversation missing, inaccessible or not owned)

Transitions (the only API the presentation layer calls):
- initialize(context, agent_id, conversation_id=None)
- send_message(text)
- switch_language(language)
- start_new_chat()
- select_conversation(conversation_id)
- rename_conversation(title=None) (+ title-edit helpers)

Concurrency model:
- single asyncio loop; state is read and written between awaits only
- at most one send in flight; a second send while SENDING is ignored
- every initialize/start_new_chat/select bumps a generation counter; results of
  awaits issued under an older generation are discarded
- rename / language switch may run while a send is pending (last write wins)
- no timeout: a never-answering invocation keeps the session in SENDING

Recoverable errors never escape a transition: they become timeline entries,
notifications and state.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import List, Optional, Set, Union

from tutorchat.errors import (
    AccessDeniedError,
    InvocationError,
    ReconciliationError,
    TutorChatError,
)
from tutorchat.models.chat import (
    DEFAULT_LANGUAGE,
    Agent,
    AgentMessage,
    ChatMessage,
    Conversation,
    ConversationPatch,
    IntroMessage,
    Language,
    UserMessage,
)
from tutorchat.models.identifiers import DRAFT_CONVERSATION, DurableId, LocalId
from tutorchat.models.session import SessionContext, SessionPhase, SessionSnapshot
from tutorchat.storage.base import RecordStore

from .conversation_directory import ConversationDirectory
from .message_reconciler import MessageReconciler
from .model_invocation import (
    InvocationRequest,
    ModelInvocationService,
    history_from_messages,
)
from .navigation import (
    DEFAULT_CHAT_PREFIX,
    DEFAULT_FALLBACK_ROUTE,
    Navigator,
    RecordingNavigator,
    chat_route,
)
from .notifier import Notifier

logger = logging.getLogger(__name__)


class ChatSession:
    """
    One screen visit of the AI chat

    Owns agent, conversation (None = draft), message timeline, sending flag,
    language preference and title-edit draft. Not shared between visits.
    """

    def __init__(
        self,
        store: RecordStore,
        invoker: ModelInvocationService,
        navigator: Optional[Navigator] = None,
        notifier: Optional[Notifier] = None,
        default_language: Language = DEFAULT_LANGUAGE,
        chat_prefix: str = DEFAULT_CHAT_PREFIX,
        fallback_route: str = DEFAULT_FALLBACK_ROUTE
    ):
        """
        Args:
            store: record store (agents, conversations, messages)
            invoker: model invocation service
            navigator: external router (defaults to an in-memory one)
            notifier: notification sink (defaults to a new Notifier)
            default_language: language of draft sessions
            chat_prefix: chat route prefix
            fallback_route: safe screen when the agent cannot be loaded
        """
        self.store = store
        self.invoker = invoker
        self.navigator = navigator or RecordingNavigator()
        self.notifier = notifier or Notifier()
        self.directory = ConversationDirectory(store, self.notifier)
        self.reconciler = MessageReconciler(self.directory)
        self.default_language = default_language
        self.chat_prefix = chat_prefix
        self.fallback_route = fallback_route

        self.context: Optional[SessionContext] = None
        self.phase = SessionPhase.LOADING
        self.agent: Optional[Agent] = None
        self.conversation: Optional[Conversation] = None
        self.messages: List[ChatMessage] = []
        self.language = default_language
        self.title_draft: Optional[str] = None

        self._resume_phase: Optional[SessionPhase] = None
        self._generation = 0
        self._background_tasks: Set[asyncio.Task] = set()
        self.last_activity = time.time()

    # ===== 只读视图 =====

    @property
    def sending(self) -> bool:
        return self.phase == SessionPhase.SENDING

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> SessionSnapshot:
        """Read-only observable for the presentation layer"""
        return SessionSnapshot(
            phase=self.phase,
            sending=self.sending,
            agent=self.agent,
            conversation=self.conversation,
            messages=list(self.messages),
            conversation_list=self.directory.conversations,
            language=self.language,
            title_draft=self.title_draft,
            notifications=list(self.notifier.notifications),
        )

    def touch(self) -> None:
        self.last_activity = time.time()

    # ===== 内部工具 =====

    def _route(self, conversation_id: Optional[str] = None) -> str:
        return chat_route(self.agent.id, conversation_id, prefix=self.chat_prefix)

    def _intro_messages(self, agent: Agent, first: Optional[datetime] = None) -> List[ChatMessage]:
        if not agent.system_prompt:
            return []
        created_at = datetime.now()
        if first is not None and first < created_at:
            created_at = first
        return [IntroMessage(id=LocalId.new(), content=agent.system_prompt, created_at=created_at)]

    def _supersede(self) -> int:
        """Start a new generation; pending completions of older ones are dropped"""
        self._generation += 1
        self._resume_phase = None
        self.title_draft = None
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _redirect(self, route: str, message: str) -> None:
        self.phase = SessionPhase.REDIRECTED
        self.conversation = None
        self.messages = []
        self.notifier.error(message)
        self.navigator.navigate(route, replace=True)
        logger.info(f"Session redirected to {route}: {message}")

    # ===== Transitions =====

    async def initialize(
        self,
        context: SessionContext,
        agent_id: str,
        conversation_id: Optional[Union[str, DurableId]] = None
    ) -> SessionPhase:
        """
        Load agent, conversation list and (optionally) a conversation

        Args:
            context: authenticated caller
            agent_id: agent to talk to
            conversation_id: conversation to resume (None = draft)

        Returns:
            resulting phase (DRAFT, ACTIVE or REDIRECTED; LOADING when superseded)
        """
        generation = self._supersede()
        self.touch()
        self.context = context
        self.phase = SessionPhase.LOADING
        self.agent = None
        self.conversation = None
        self.messages = []
        self.language = self.default_language

        if isinstance(conversation_id, str):
            conversation_id = DurableId(value=conversation_id) if conversation_id else None

        logger.info(
            f"Initializing chat session (user={context.user_id}, agent={agent_id}, "
            f"conversation={conversation_id or 'draft'})"
        )

        try:
            agent = await self.store.get_agent(agent_id)
        except TutorChatError as e:
            logger.error(f"Failed to load agent {agent_id}: {e}")
            if self._is_current(generation):
                self._redirect(self.fallback_route, "Erro ao carregar o modelo de IA.")
            return self.phase
        if not self._is_current(generation):
            return self.phase

        if agent is None:
            self._redirect(self.fallback_route, "Modelo de IA não encontrado.")
            return self.phase
        if not agent.is_active:
            self._redirect(self.fallback_route, "Modelo de IA indisponível.")
            return self.phase
        if not context.can_use(agent):
            logger.warning(f"Agent access denied (user={context.user_id}, agent={agent.id})")
            self._redirect(self.fallback_route, "Acesso negado ao modelo de IA.")
            return self.phase
        self.agent = agent

        await self.directory.load(context.user_id, agent.id)
        if not self._is_current(generation):
            return self.phase

        if conversation_id is None:
            self.messages = self._intro_messages(agent)
            self.phase = SessionPhase.DRAFT
            logger.info(f"Session ready: draft conversation with agent {agent.id}")
            return self.phase

        try:
            conversation = await self.store.get_conversation(conversation_id, context.user_id, agent.id)
            if conversation is not None and (
                conversation.user_id != context.user_id or conversation.agent_id != agent.id
            ):
                raise AccessDeniedError("conversation", str(conversation_id), "user/agent mismatch")
            history = await self.store.list_messages(conversation_id) if conversation else []
        except AccessDeniedError as e:
            logger.warning(f"Conversation access denied: {e}")
            if self._is_current(generation):
                self._redirect(self._route(), "Conversa não encontrada.")
            return self.phase
        except TutorChatError as e:
            logger.error(f"Failed to load conversation {conversation_id}: {e}")
            if self._is_current(generation):
                self._redirect(self._route(), "Erro ao carregar mensagens.")
            return self.phase
        if not self._is_current(generation):
            return self.phase

        if conversation is None:
            self._redirect(self._route(), "Conversa não encontrada.")
            return self.phase

        history = sorted(history, key=lambda message: message.created_at)
        first = history[0].created_at if history else None
        self.conversation = conversation
        self.language = conversation.language
        self.messages = self._intro_messages(agent, first) + history
        self.phase = SessionPhase.ACTIVE
        logger.info(f"Session ready: conversation {conversation.id} ({len(history)} messages)")
        return self.phase

    async def send_message(self, text: Optional[str]) -> bool:
        """
        Send a user message

        Ignored (returns False) when the text is blank, no agent is loaded, the
        session is not in DRAFT/ACTIVE, or another send is in flight.

        Returns:
            True when the reply was reconciled into the timeline
        """
        if not text or not text.strip():
            return False
        if self.agent is None or self.context is None:
            return False
        if self.phase == SessionPhase.SENDING:
            logger.debug("send_message ignored: already sending")
            return False
        if self.phase not in (SessionPhase.DRAFT, SessionPhase.ACTIVE):
            return False

        self.touch()
        generation = self._generation
        agent = self.agent
        context = self.context
        conversation = self.conversation

        pending = UserMessage(
            id=LocalId.new(),
            conversation_id=conversation.id if conversation else DRAFT_CONVERSATION,
            content=text,
            created_at=datetime.now(),
        )
        request = InvocationRequest(
            agent_id=agent.id,
            user_id=context.user_id,
            permission=context.permission,
            conversation_id=conversation.id if conversation else None,
            user_text=text,
            system_prompt=agent.system_prompt,
            language=self.language,
            history=history_from_messages(self.messages),
        )

        self.messages = self.messages + [pending]
        self._resume_phase = self.phase
        self.phase = SessionPhase.SENDING

        try:
            failure: Optional[InvocationError] = None
            try:
                result = await self.invoker.invoke(request)
            except InvocationError as e:
                failure = e
            except Exception as e:
                logger.error(f"Unexpected invocation failure: {e}", exc_info=True)
                failure = InvocationError(str(e), user_message="Não foi possível obter uma resposta do modelo de IA.")

            if not self._is_current(generation):
                logger.info("Send result discarded: session was re-initialized meanwhile")
                return False

            if failure is None:
                try:
                    reconciliation = self.reconciler.reconcile(
                        user_id=context.user_id,
                        agent_id=agent.id,
                        conversation=self.conversation,
                        language=self.language,
                        messages=self.messages,
                        pending=pending,
                        result=result,
                    )
                except ReconciliationError as e:
                    logger.error(f"Reconciliation failed: {e}")
                    failure = e
                except Exception as e:
                    logger.error(f"Unexpected reconciliation failure: {e}", exc_info=True)
                    failure = ReconciliationError(
                        str(e), user_message="Não foi possível processar a resposta do modelo de IA."
                    )

            if failure is not None:
                self._fail_send(pending, failure)
                return False

            self.conversation = reconciliation.conversation
            self.messages = reconciliation.messages
            self.language = reconciliation.conversation.language
            self.phase = SessionPhase.ACTIVE
            self._resume_phase = None

            if reconciliation.created:
                self.navigator.navigate(self._route(reconciliation.conversation.id.value), replace=True)

            self._schedule_directory_refresh()
            return True
        finally:
            if self._is_current(generation) and self.phase == SessionPhase.SENDING:
                self.phase = self._resume_phase or SessionPhase.DRAFT
                self._resume_phase = None

    def _fail_send(self, pending: UserMessage, error: InvocationError) -> None:
        """Keep the user message, append one error reply, leave SENDING"""
        content = f"Erro: {error.user_message}"
        self.messages = self.messages + [
            AgentMessage(
                id=LocalId.new(),
                conversation_id=pending.conversation_id,
                content=content,
                created_at=datetime.now(),
                is_error=True,
            )
        ]
        self.phase = self._resume_phase or SessionPhase.DRAFT
        self._resume_phase = None
        self.notifier.error(content)
        logger.warning(f"Send failed, session back to {self.phase.value}: {error}")

    def _schedule_directory_refresh(self) -> None:
        task = asyncio.create_task(self._refresh_directory())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _refresh_directory(self) -> None:
        try:
            await self.directory.refresh()
        except Exception as e:
            logger.warning(f"Directory refresh failed: {e}")

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending fire-and-forget work (directory refreshes)"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def switch_language(self, language: Union[str, Language]) -> bool:
        """
        Change the reply language of the current conversation

        No-op in draft sessions or when the language is unchanged. Local state
        changes only after the store confirms.

        Returns:
            True when the change was persisted and applied
        """
        try:
            language = Language(language)
        except ValueError:
            self.notifier.error(f"Idioma não suportado: {language}")
            return False

        conversation = self.conversation
        if conversation is None or self.context is None:
            return False
        if language == self.language:
            return False

        self.touch()
        generation = self._generation
        try:
            await self.store.update_conversation(
                conversation.id,
                self.context.user_id,
                ConversationPatch(language=language)
            )
        except TutorChatError as e:
            logger.error(f"Failed to switch language of {conversation.id}: {e}")
            if self._is_current(generation):
                self.notifier.error("Erro ao alterar o idioma da conversa.")
            return False

        if not self._is_current(generation) or self.conversation is None \
                or self.conversation.id != conversation.id:
            return False

        self.language = language
        self.conversation = self.conversation.model_copy(update={"language": language})
        self.directory.update(self.conversation)
        logger.info(f"Conversation {conversation.id} language -> {language.value}")
        return True

    def start_new_chat(self) -> bool:
        """Discard the current conversation and start a draft with the same agent"""
        if self.agent is None:
            return False

        self._supersede()
        self.touch()
        self.conversation = None
        self.messages = self._intro_messages(self.agent)
        self.language = self.default_language
        self.phase = SessionPhase.DRAFT
        self.navigator.navigate(self._route())
        logger.info(f"New draft conversation with agent {self.agent.id}")
        return True

    async def select_conversation(self, conversation_id: Union[str, DurableId]) -> SessionPhase:
        """Open a prior conversation of the same agent (same as a fresh initialize)"""
        if self.agent is None or self.context is None:
            return self.phase

        if isinstance(conversation_id, DurableId):
            conversation_id = conversation_id.value
        self.navigator.navigate(self._route(conversation_id))
        return await self.initialize(self.context, self.agent.id, conversation_id)

    # ===== 标题编辑 =====

    def begin_title_edit(self) -> bool:
        if self.conversation is None:
            return False
        self.title_draft = self.conversation.title
        return True

    def set_title_draft(self, text: str) -> None:
        self.title_draft = text

    def cancel_title_edit(self) -> None:
        self.title_draft = None

    async def rename_conversation(self, title: Optional[str] = None) -> bool:
        """
        Rename the current conversation

        Args:
            title: new title (defaults to the title-edit draft)

        Returns:
            True when the store confirmed and the local title changed
        """
        if title is None:
            title = self.title_draft
        conversation = self.conversation
        if conversation is None or self.context is None or not title or not title.strip():
            return False

        title = title.strip()
        self.touch()
        generation = self._generation
        try:
            await self.store.update_conversation(
                conversation.id,
                self.context.user_id,
                ConversationPatch(title=title)
            )
        except TutorChatError as e:
            logger.error(f"Failed to rename conversation {conversation.id}: {e}")
            if self._is_current(generation):
                self.notifier.error(f"Erro ao atualizar título: {e}")
            return False

        if not self._is_current(generation) or self.conversation is None \
                or self.conversation.id != conversation.id:
            return False

        self.conversation = self.conversation.model_copy(update={"title": title})
        self.directory.update(self.conversation)
        self.title_draft = None
        self.notifier.success("Título atualizado!")
        return True

    async def close(self) -> None:
        """Drop pending completions and background work"""
        self._supersede()
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        self._background_tasks.clear()


__all__ = [
    "ChatSession",
]
