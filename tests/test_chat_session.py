"""
ChatSession 状态机测试

覆盖：
1. initialize（草稿 / 恢复会话 / 跳转）
2. 发送消息：乐观更新、草稿转正、单会话、单飞行
3. 失败恢复（草稿 / 已有会话 / 对账失败）
4. 并发：发送中重命名、发送中切换会话、挂起的调用
5. 语言切换、重命名、新对话、会话列表刷新
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from tutorchat.errors import InvocationError, RecordStoreError
from tutorchat.models.chat import (
    Agent,
    AgentMessage,
    IntroMessage,
    Language,
    UserMessage,
)
from tutorchat.models.identifiers import DRAFT_CONVERSATION, DurableId
from tutorchat.models.session import NotificationLevel, SessionContext, SessionPhase
from tutorchat.services.chat_session import ChatSession
from tutorchat.services.conversation_directory import LOAD_ERROR_MESSAGE
from tutorchat.services.model_invocation import InvocationResult

INTRO = "Olá! Sou seu tutor de inglês. Vamos praticar?"


def _contents(messages):
    return [message.content for message in messages]


def _error_notifications(session):
    return [n.message for n in session.notifier.notifications if n.level == NotificationLevel.ERROR]


# ==================== initialize ====================

@pytest.mark.asyncio
async def test_initialize_draft_seeds_intro(session, context):
    """无 conversation_id 进入草稿，时间线只有介绍消息"""
    phase = await session.initialize(context, "agent-1")

    snapshot = session.snapshot()
    assert phase == SessionPhase.DRAFT
    assert snapshot.conversation is None
    assert snapshot.sending is False
    assert snapshot.language == Language.PORTUGUESE
    assert len(snapshot.messages) == 1
    assert isinstance(snapshot.messages[0], IntroMessage)
    assert snapshot.messages[0].content == INTRO
    assert snapshot.conversation_list == []


@pytest.mark.asyncio
async def test_initialize_draft_without_system_prompt_has_empty_timeline(session, context, store):
    await store.save_agent(Agent(id="agent-plain", provider="Groq", model_variant="llama3-8b"))

    await session.initialize(context, "agent-plain")

    assert session.phase == SessionPhase.DRAFT
    assert session.messages == []


@pytest.mark.asyncio
async def test_initialize_active_loads_history_in_order(session, context, seed):
    """恢复会话：介绍消息在最前，历史按创建时间升序"""
    conversation_id = await seed(language=Language.ENGLISH, exchanges=2)

    phase = await session.initialize(context, "agent-1", conversation_id.value)

    assert phase == SessionPhase.ACTIVE
    assert session.conversation.id == conversation_id
    assert session.language == Language.ENGLISH
    assert _contents(session.messages) == [
        INTRO, "pergunta 0", "resposta 0", "pergunta 1", "resposta 1"
    ]
    timestamps = [message.created_at for message in session.messages]
    assert timestamps == sorted(timestamps)
    assert [c.id for c in session.snapshot().conversation_list] == [conversation_id]


@pytest.mark.asyncio
async def test_initialize_missing_agent_redirects_to_fallback(session, context, navigator):
    phase = await session.initialize(context, "agent-missing")

    assert phase == SessionPhase.REDIRECTED
    assert session.sending is False
    assert navigator.history[-1] == ("/language-models", True)
    assert _error_notifications(session) == ["Modelo de IA não encontrado."]


@pytest.mark.asyncio
async def test_initialize_inactive_agent_redirects_to_fallback(session, context, store, navigator):
    await store.save_agent(Agent(id="agent-off", provider="OpenAI", is_active=False))

    phase = await session.initialize(context, "agent-off")

    assert phase == SessionPhase.REDIRECTED
    assert navigator.current == "/language-models"


@pytest.mark.asyncio
async def test_initialize_standard_agent_requires_paid_tier(session, navigator):
    """免费用户不能使用标准 Agent"""
    phase = await session.initialize(SessionContext(user_id="user-1", permission="Free"), "agent-1")

    assert phase == SessionPhase.REDIRECTED
    assert session.agent is None
    assert session.messages == []
    assert navigator.history[-1] == ("/language-models", True)
    assert _error_notifications(session) == ["Acesso negado ao modelo de IA."]


@pytest.mark.asyncio
async def test_initialize_foreign_personal_agent_redirects(session, context, store, navigator):
    await store.save_agent(Agent(id="agent-mine", provider="OpenAI", is_standard=False, user_id="user-2"))

    phase = await session.initialize(context, "agent-mine")

    assert phase == SessionPhase.REDIRECTED
    assert navigator.current == "/language-models"
    assert _error_notifications(session) == ["Acesso negado ao modelo de IA."]


@pytest.mark.asyncio
async def test_personal_agent_usable_by_owner_on_free_tier(session, store, invoker):
    await store.save_agent(Agent(
        id="agent-mine", provider="OpenAI", model_variant="gpt-4o-mini",
        is_standard=False, user_id="user-1",
    ))
    owner = SessionContext(user_id="user-1", permission="Free")

    assert await session.initialize(owner, "agent-mine") == SessionPhase.DRAFT
    assert await session.send_message("Oi") is True
    assert invoker.requests[-1].permission == "Free"
    assert session.phase == SessionPhase.ACTIVE


@pytest.mark.asyncio
async def test_initialize_agent_store_failure_redirects_to_fallback(session, context, store, navigator):
    store.get_agent = AsyncMock(side_effect=RecordStoreError("redis down"))

    phase = await session.initialize(context, "agent-1")

    assert phase == SessionPhase.REDIRECTED
    assert navigator.current == "/language-models"


@pytest.mark.asyncio
async def test_initialize_foreign_conversation_redirects_to_agent_route(session, context, seed, navigator):
    """其他用户的会话：不进入 ACTIVE，跳转到 Agent 草稿页"""
    conversation_id = await seed(user_id="user-2")

    phase = await session.initialize(context, "agent-1", conversation_id.value)

    assert phase == SessionPhase.REDIRECTED
    assert session.conversation is None
    assert session.messages == []
    assert navigator.history[-1] == ("/ai-chat/agent-1", True)
    assert _error_notifications(session) == ["Conversa não encontrada."]


@pytest.mark.asyncio
async def test_initialize_conversation_of_other_agent_redirects(session, context, store, seed, navigator):
    await store.save_agent(Agent(id="agent-2", provider="DeepSeek", model_variant="deepseek-chat"))
    conversation_id = await seed(agent_id="agent-2")

    phase = await session.initialize(context, "agent-1", conversation_id.value)

    assert phase == SessionPhase.REDIRECTED
    assert navigator.current == "/ai-chat/agent-1"


@pytest.mark.asyncio
async def test_initialize_unknown_conversation_redirects(session, context, navigator):
    phase = await session.initialize(context, "agent-1", "conversation-missing")

    assert phase == SessionPhase.REDIRECTED
    assert navigator.current == "/ai-chat/agent-1"


@pytest.mark.asyncio
async def test_initialize_message_load_failure_redirects(session, context, store, seed, navigator):
    conversation_id = await seed()
    store.list_messages = AsyncMock(side_effect=RecordStoreError("redis down"))

    phase = await session.initialize(context, "agent-1", conversation_id.value)

    assert phase == SessionPhase.REDIRECTED
    assert session.conversation is None
    assert navigator.current == "/ai-chat/agent-1"


@pytest.mark.asyncio
async def test_initialize_directory_failure_fails_open(session, context, store):
    """会话列表加载失败不影响进入草稿，只发通知"""
    store.list_conversations = AsyncMock(side_effect=RecordStoreError("redis down"))

    phase = await session.initialize(context, "agent-1")

    assert phase == SessionPhase.DRAFT
    assert session.snapshot().conversation_list == []
    assert LOAD_ERROR_MESSAGE in _error_notifications(session)


# ==================== 发送消息 ====================

@pytest.mark.asyncio
async def test_first_send_creates_conversation(session, context, store, navigator):
    """草稿首条消息：创建会话、重绑用户消息、替换地址"""
    await session.initialize(context, "agent-1")

    assert await session.send_message("What is the present perfect?") is True

    snapshot = session.snapshot()
    conversation = snapshot.conversation
    assert snapshot.phase == SessionPhase.ACTIVE
    assert snapshot.sending is False
    assert conversation is not None
    assert conversation.title == "What is the present perfect?"

    intro, user_message, agent_message = snapshot.messages
    assert isinstance(intro, IntroMessage)
    assert isinstance(user_message, UserMessage)
    assert user_message.conversation_id == conversation.id
    assert isinstance(agent_message, AgentMessage)
    assert agent_message.content == "Resposta para: What is the present perfect?"
    assert agent_message.conversation_id == conversation.id

    stored = await store.list_conversations("user-1", "agent-1")
    assert [c.id for c in stored] == [conversation.id]
    assert snapshot.conversation_list[0].id == conversation.id
    assert navigator.history[-1] == (f"/ai-chat/agent-1/{conversation.id.value}", True)


@pytest.mark.asyncio
async def test_pending_message_keeps_its_local_id(session, context, invoker):
    """乐观消息立即出现，草稿转正后 id 不变，只改 conversation 引用"""
    await session.initialize(context, "agent-1")
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Hello"))
    await invoker.started.wait()

    pending = session.messages[-1]
    assert isinstance(pending, UserMessage)
    assert pending.id.kind == "local"
    assert pending.conversation_id == DRAFT_CONVERSATION
    assert session.phase == SessionPhase.SENDING
    assert session.sending is True

    invoker.gate.set()
    assert await task is True

    rebound = session.messages[1]
    assert rebound.id == pending.id
    assert rebound.conversation_id == session.conversation.id


@pytest.mark.asyncio
async def test_later_sends_reuse_the_same_conversation(session, context, store, invoker):
    """同一会话内只创建一次 conversation"""
    await session.initialize(context, "agent-1")

    assert await session.send_message("first") is True
    conversation_id = session.conversation.id
    assert await session.send_message("second") is True
    assert await session.send_message("third") is True

    assert session.conversation.id == conversation_id
    assert len(await store.list_conversations("user-1", "agent-1")) == 1
    assert len(await store.list_messages(conversation_id)) == 6

    assert invoker.requests[0].conversation_id is None
    assert invoker.requests[0].history == []
    assert invoker.requests[1].conversation_id == conversation_id
    assert [turn.content for turn in invoker.requests[1].history] == ["first", "Resposta para: first"]
    assert [turn.role for turn in invoker.requests[1].history] == ["user", "model"]


@pytest.mark.asyncio
async def test_timeline_stays_ordered_by_creation(session, context):
    await session.initialize(context, "agent-1")
    await session.send_message("um")
    await session.send_message("dois")

    timestamps = [message.created_at for message in session.messages]
    assert timestamps == sorted(timestamps)
    assert _contents(session.messages)[1:] == ["um", "Resposta para: um", "dois", "Resposta para: dois"]


@pytest.mark.asyncio
async def test_send_ignored_when_blank(session, context, invoker):
    await session.initialize(context, "agent-1")

    assert await session.send_message("") is False
    assert await session.send_message("   \n") is False
    assert await session.send_message(None) is False

    assert invoker.requests == []
    assert session.phase == SessionPhase.DRAFT
    assert len(session.messages) == 1


@pytest.mark.asyncio
async def test_send_ignored_before_initialize(session, invoker):
    assert await session.send_message("Olá") is False
    assert invoker.requests == []


@pytest.mark.asyncio
async def test_send_ignored_when_redirected(session, context, invoker):
    await session.initialize(context, "agent-missing")

    assert await session.send_message("Olá") is False
    assert invoker.requests == []


@pytest.mark.asyncio
async def test_at_most_one_send_in_flight(session, context, invoker):
    """发送中再次发送被忽略，不产生第二次调用"""
    await session.initialize(context, "agent-1")
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("primeira"))
    await invoker.started.wait()

    assert session.sending is True
    assert await session.send_message("segunda") is False

    invoker.gate.set()
    assert await task is True

    assert len(invoker.requests) == 1
    user_messages = [m for m in session.messages if isinstance(m, UserMessage)]
    assert _contents(user_messages) == ["primeira"]


# ==================== 失败恢复 ====================

@pytest.mark.asyncio
async def test_draft_send_failure_keeps_message_and_recovers(session, context, store, invoker):
    """草稿发送失败：保留用户消息、追加错误回复、回到草稿、不创建会话"""
    invoker.scripted.append(InvocationError("provider down", user_message="Modelo indisponível."))
    await session.initialize(context, "agent-1")

    assert await session.send_message("Oi") is False

    snapshot = session.snapshot()
    assert snapshot.phase == SessionPhase.DRAFT
    assert snapshot.sending is False
    assert snapshot.conversation is None
    assert [m.role for m in snapshot.messages] == ["system-intro", "user", "agent"]
    error = snapshot.messages[-1]
    assert error.is_error is True
    assert error.content == "Erro: Modelo indisponível."
    assert await store.list_conversations("user-1", "agent-1") == []
    assert _error_notifications(session) == ["Erro: Modelo indisponível."]

    # 重试成功后才创建会话；错误回复不进入历史
    assert await session.send_message("Oi de novo") is True
    assert session.phase == SessionPhase.ACTIVE
    assert [turn.content for turn in invoker.requests[-1].history] == ["Oi"]
    assert session.messages[1].conversation_id == DRAFT_CONVERSATION
    assert len(await store.list_conversations("user-1", "agent-1")) == 1


@pytest.mark.asyncio
async def test_active_send_failure_keeps_conversation(session, context, store, invoker, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    invoker.scripted.append(InvocationError("timeout", user_message="Tempo esgotado."))

    assert await session.send_message("Mais um exemplo?") is False

    assert session.phase == SessionPhase.ACTIVE
    assert session.sending is False
    assert session.conversation.id == conversation_id
    assert _contents(session.messages)[-2:] == ["Mais um exemplo?", "Erro: Tempo esgotado."]
    assert len(await store.list_messages(conversation_id)) == 2


@pytest.mark.asyncio
async def test_unexpected_invoker_exception_is_contained(session, context, invoker):
    invoker.scripted.append(RuntimeError("socket closed"))
    await session.initialize(context, "agent-1")

    assert await session.send_message("Olá") is False

    assert session.phase == SessionPhase.DRAFT
    assert session.sending is False
    assert session.messages[-1].content == "Erro: Não foi possível obter uma resposta do modelo de IA."


@pytest.mark.asyncio
async def test_draft_reply_without_conversation_id_is_a_failure(session, context, invoker):
    """草稿回复缺少会话 id：按失败处理，不产生半绑定状态"""
    invoker.scripted.append(InvocationResult(reply_text="Olá!"))
    await session.initialize(context, "agent-1")

    assert await session.send_message("Olá") is False

    assert session.phase == SessionPhase.DRAFT
    assert session.conversation is None
    assert session.snapshot().conversation_list == []
    assert session.messages[-1].content == "Erro: A resposta do modelo não identificou a nova conversa."


@pytest.mark.asyncio
async def test_active_reply_for_another_conversation_is_a_failure(session, context, invoker, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    invoker.scripted.append(
        InvocationResult(reply_text="?", new_conversation_id=DurableId(value="someone-else"))
    )

    assert await session.send_message("Olá") is False

    assert session.phase == SessionPhase.ACTIVE
    assert session.conversation.id == conversation_id
    assert session.messages[-1].is_error is True


# ==================== 并发 ====================

@pytest.mark.asyncio
async def test_rename_during_send_is_kept(session, context, store, invoker, seed):
    """发送中重命名：回复到达后标题保持新值"""
    conversation_id = await seed(title="Antigo")
    await session.initialize(context, "agent-1", conversation_id.value)
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Explique de novo"))
    await invoker.started.wait()
    assert await session.rename_conversation("Revisão de tempos verbais") is True

    invoker.gate.set()
    assert await task is True

    assert session.phase == SessionPhase.ACTIVE
    assert session.conversation.title == "Revisão de tempos verbais"
    stored = await store.get_conversation(conversation_id, "user-1", "agent-1")
    assert stored.title == "Revisão de tempos verbais"


@pytest.mark.asyncio
async def test_select_during_send_discards_stale_reply(session, context, invoker, seed, navigator):
    """发送中切换会话：旧回复被丢弃，不跳转、不改列表"""
    other_id = await seed(title="Outra")
    await session.initialize(context, "agent-1")
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Pergunta antiga"))
    await invoker.started.wait()
    assert await session.select_conversation(other_id.value) == SessionPhase.ACTIVE

    invoker.gate.set()
    assert await task is False

    assert session.phase == SessionPhase.ACTIVE
    assert session.conversation.id == other_id
    assert "Pergunta antiga" not in _contents(session.messages)
    assert [c.id for c in session.directory.conversations] == [other_id]
    assert not any(replace for _, replace in navigator.history)


@pytest.mark.asyncio
async def test_new_chat_during_send_discards_stale_reply(session, context, invoker, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Continua?"))
    await invoker.started.wait()
    assert session.start_new_chat() is True
    assert session.sending is False

    invoker.gate.set()
    assert await task is False

    assert session.phase == SessionPhase.DRAFT
    assert session.conversation is None
    assert _contents(session.messages) == [INTRO]


@pytest.mark.asyncio
async def test_stuck_invocation_keeps_sending(session, context, invoker):
    """调用无超时：永不返回时会话一直处于 SENDING"""
    await session.initialize(context, "agent-1")
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Alô?"))
    await invoker.started.wait()
    await asyncio.sleep(0.05)

    assert session.sending is True
    assert await session.send_message("Alguém aí?") is False

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.sending is False
    assert session.phase == SessionPhase.DRAFT


# ==================== 恢复会话 ====================

@pytest.mark.asyncio
async def test_resume_shows_the_same_exchanges(session, context, store, invoker):
    """重新打开会话看到相同的消息（内容与角色）"""
    await session.initialize(context, "agent-1")
    await session.send_message("first")
    await session.send_message("second")
    conversation_id = session.conversation.id
    live = [(m.role, m.content) for m in session.messages if not isinstance(m, IntroMessage)]

    resumed = ChatSession(store=store, invoker=invoker)
    await resumed.initialize(context, "agent-1", conversation_id.value)
    again = ChatSession(store=store, invoker=invoker)
    await again.initialize(context, "agent-1", conversation_id.value)

    restored = [(m.role, m.content) for m in resumed.messages if not isinstance(m, IntroMessage)]
    assert restored == live
    assert _contents(again.messages) == _contents(resumed.messages)
    assert all(m.id.kind == "durable" for m in resumed.messages if not isinstance(m, IntroMessage))


# ==================== 语言切换 ====================

@pytest.mark.asyncio
async def test_switch_language_persists_and_applies(session, context, store, invoker, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)

    assert await session.switch_language("English") is True

    assert session.language == Language.ENGLISH
    assert session.conversation.language == Language.ENGLISH
    assert session.directory.get(conversation_id).language == Language.ENGLISH
    stored = await store.get_conversation(conversation_id, "user-1", "agent-1")
    assert stored.language == Language.ENGLISH

    await session.send_message("How are you?")
    assert invoker.requests[-1].language == Language.ENGLISH


@pytest.mark.asyncio
async def test_switch_language_in_draft_is_noop(session, context, store):
    await session.initialize(context, "agent-1")
    store.update_conversation = AsyncMock()

    assert await session.switch_language(Language.SPANISH) is False

    assert session.language == Language.PORTUGUESE
    store.update_conversation.assert_not_called()


@pytest.mark.asyncio
async def test_switch_language_rejects_unknown_language(session, context, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)

    assert await session.switch_language("Klingon") is False

    assert session.language == Language.PORTUGUESE
    assert len(_error_notifications(session)) == 1


@pytest.mark.asyncio
async def test_switch_language_failure_keeps_previous_language(session, context, store, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    store.update_conversation = AsyncMock(side_effect=RecordStoreError("redis down"))

    assert await session.switch_language("Español") is False

    assert session.language == Language.PORTUGUESE
    assert session.conversation.language == Language.PORTUGUESE
    assert _error_notifications(session) == ["Erro ao alterar o idioma da conversa."]


# ==================== 重命名 ====================

@pytest.mark.asyncio
async def test_title_edit_flow(session, context, store, seed):
    conversation_id = await seed(title="Present perfect")
    await session.initialize(context, "agent-1", conversation_id.value)

    assert session.begin_title_edit() is True
    assert session.title_draft == "Present perfect"
    session.set_title_draft("  Present perfect x past simple  ")

    assert await session.rename_conversation() is True

    assert session.conversation.title == "Present perfect x past simple"
    assert session.title_draft is None
    assert session.directory.get(conversation_id).title == "Present perfect x past simple"
    stored = await store.get_conversation(conversation_id, "user-1", "agent-1")
    assert stored.title == "Present perfect x past simple"
    assert session.notifier.notifications[-1].level == NotificationLevel.SUCCESS
    assert session.notifier.notifications[-1].message == "Título atualizado!"


@pytest.mark.asyncio
async def test_cancel_title_edit(session, context, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)

    session.begin_title_edit()
    session.set_title_draft("Outro")
    session.cancel_title_edit()

    assert session.title_draft is None
    assert session.conversation.title == "Present perfect"


@pytest.mark.asyncio
async def test_rename_failure_keeps_old_title(session, context, store, seed):
    conversation_id = await seed(title="Original")
    await session.initialize(context, "agent-1", conversation_id.value)
    session.begin_title_edit()
    session.set_title_draft("Novo")
    store.update_conversation = AsyncMock(side_effect=RecordStoreError("redis down"))

    assert await session.rename_conversation() is False

    assert session.conversation.title == "Original"
    assert session.title_draft == "Novo"
    assert _error_notifications(session)[-1].startswith("Erro ao atualizar título")


@pytest.mark.asyncio
async def test_rename_rejects_blank_title_and_draft_sessions(session, context, store, seed):
    await session.initialize(context, "agent-1")
    assert session.begin_title_edit() is False
    assert await session.rename_conversation("Qualquer") is False

    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    assert await session.rename_conversation("   ") is False
    assert session.conversation.title == "Present perfect"


# ==================== 新对话 / 切换会话 ====================

@pytest.mark.asyncio
async def test_start_new_chat_resets_to_draft(session, context, seed, navigator):
    conversation_id = await seed(language=Language.ENGLISH)
    await session.initialize(context, "agent-1", conversation_id.value)

    assert session.start_new_chat() is True

    assert session.phase == SessionPhase.DRAFT
    assert session.conversation is None
    assert session.language == Language.PORTUGUESE
    assert _contents(session.messages) == [INTRO]
    assert navigator.history[-1] == ("/ai-chat/agent-1", False)
    assert [c.id for c in session.snapshot().conversation_list] == [conversation_id]


@pytest.mark.asyncio
async def test_start_new_chat_requires_agent(session):
    assert session.start_new_chat() is False


@pytest.mark.asyncio
async def test_select_conversation_loads_it(session, context, seed, navigator):
    first_id = await seed(title="Primeira")
    await asyncio.sleep(0.01)
    second_id = await seed(title="Segunda", exchanges=2)
    await session.initialize(context, "agent-1", first_id.value)

    phase = await session.select_conversation(second_id)

    assert phase == SessionPhase.ACTIVE
    assert session.conversation.id == second_id
    assert len(session.messages) == 5
    assert (f"/ai-chat/agent-1/{second_id.value}", False) in navigator.history


# ==================== 会话列表刷新 ====================

@pytest.mark.asyncio
async def test_directory_refresh_after_send_reorders(session, context, seed):
    older_id = await seed(title="Mais antiga")
    await asyncio.sleep(0.01)
    newer_id = await seed(title="Mais nova")
    await session.initialize(context, "agent-1", older_id.value)
    assert [c.id for c in session.directory.conversations] == [newer_id, older_id]

    assert await session.send_message("Voltando a este tema") is True
    await session.wait_for_background_tasks()

    assert [c.id for c in session.directory.conversations] == [older_id, newer_id]


@pytest.mark.asyncio
async def test_directory_refresh_failure_is_not_surfaced(session, context, store, seed):
    conversation_id = await seed()
    await session.initialize(context, "agent-1", conversation_id.value)
    store.list_conversations = AsyncMock(side_effect=RecordStoreError("redis down"))

    assert await session.send_message("Olá") is True
    await session.wait_for_background_tasks()

    assert session.phase == SessionPhase.ACTIVE
    assert _error_notifications(session) == []
    assert [c.id for c in session.directory.conversations] == [conversation_id]


@pytest.mark.asyncio
async def test_close_supersedes_pending_send(session, context, invoker):
    await session.initialize(context, "agent-1")
    invoker.gate = asyncio.Event()

    task = asyncio.create_task(session.send_message("Olá"))
    await invoker.started.wait()
    await session.close()
    invoker.gate.set()

    assert await task is False
