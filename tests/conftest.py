"""
公共测试 Fixtures

- MemoryRecordStore 预置一个 Agent
- FakeGateway: 不访问网络的 ProviderGateway
- FakeInvoker: 基于 DirectInvocationService，可脚本化结果、可用 gate 挂起调用
"""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from tutorchat.models.chat import Agent, Language, MessageRole
from tutorchat.models.identifiers import DurableId
from tutorchat.models.session import SessionContext
from tutorchat.services.chat_session import ChatSession
from tutorchat.services.llm_providers import ProviderGateway
from tutorchat.services.model_invocation import (
    DirectInvocationService,
    InvocationRequest,
    InvocationResult,
    ModelInvocationService,
)
from tutorchat.services.navigation import RecordingNavigator
from tutorchat.storage.memory_storage import MemoryRecordStore

USER_ID = "user-1"
AGENT_ID = "agent-1"
INTRO = "Olá! Sou seu tutor de inglês. Vamos praticar?"


class FakeGateway(ProviderGateway):
    """ProviderGateway that answers locally"""

    def __init__(self):
        super().__init__(api_keys={})
        self.prompts: List[list] = []

    async def complete(self, agent, messages):
        self.prompts.append(messages)
        return f"Resposta para: {messages[-1]['content']}"


class FakeInvoker(ModelInvocationService):
    """
    Invocation service for session tests

    Scripted items (InvocationResult or Exception) are consumed first; otherwise
    the call goes through DirectInvocationService with a FakeGateway, so the
    store sees the same writes as in production.
    """

    def __init__(self, store: MemoryRecordStore):
        self.inner = DirectInvocationService(store, FakeGateway())
        self.requests: List[InvocationRequest] = []
        self.scripted: list = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        self.requests.append(request)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.scripted:
            item = self.scripted.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return await self.inner.invoke(request)


@pytest.fixture
def agent():
    return Agent(
        id=AGENT_ID,
        provider="OpenAI",
        model_name="Tutor de Inglês",
        model_variant="gpt-4o-mini",
        system_prompt=INTRO,
    )


@pytest.fixture
def context():
    return SessionContext(user_id=USER_ID, permission="Pro")


@pytest_asyncio.fixture
async def store(agent):
    store = MemoryRecordStore()
    await store.save_agent(agent)
    return store


@pytest.fixture
def invoker(store):
    return FakeInvoker(store)


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def session(store, invoker, navigator):
    return ChatSession(store=store, invoker=invoker, navigator=navigator)


@pytest.fixture
def seed(store):
    """Factory: create a conversation with `exchanges` user/agent pairs"""

    async def _seed(
        title: str = "Present perfect",
        user_id: str = USER_ID,
        agent_id: str = AGENT_ID,
        language: Language = Language.PORTUGUESE,
        exchanges: int = 1
    ) -> DurableId:
        conversation = await store.create_conversation(user_id, agent_id, title, language)
        for index in range(exchanges):
            await store.append_message(conversation.id, MessageRole.USER, f"pergunta {index}")
            await store.append_message(conversation.id, MessageRole.AGENT, f"resposta {index}")
        return conversation.id

    return _seed
