"""
Model Invocation Service - 模型调用服务

One round trip: (agent, conversation?, prior turns, new user text, language)
-> reply text, plus the id/title of a conversation created by this call.

Implementations:
- EdgeFunctionInvocationService: remote function over HTTP (httpx)
- DirectInvocationService: in-process; calls the provider and persists the
  exchange in the record store itself
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from tutorchat.errors import InvocationError, TutorChatError
from tutorchat.models.chat import (
    AgentMessage,
    ChatMessage,
    Language,
    MessageRole,
    conversation_turns,
)
from tutorchat.models.identifiers import DurableId
from tutorchat.models.session import SessionContext
from tutorchat.storage.base import RecordStore

from .llm_providers import ProviderGateway

logger = logging.getLogger(__name__)

TITLE_SOURCE_LIMIT = 150
TITLE_WORDS = 5


class HistoryTurn(BaseModel):
    """Prior turn sent along with the new user text"""
    role: Literal["user", "model"]
    content: str


class InvocationRequest(BaseModel):
    """Input of one invocation"""
    agent_id: str
    user_id: str
    permission: Optional[str] = None
    conversation_id: Optional[DurableId] = None
    user_text: str
    system_prompt: Optional[str] = None
    language: Language
    history: List[HistoryTurn] = Field(default_factory=list)


class InvocationResult(BaseModel):
    """
    Output of one invocation

    new_conversation_id / new_conversation_title are set when the call created
    the conversation (draft sessions). Remote implementations may also echo the
    id of an existing conversation.
    """
    reply_text: str
    new_conversation_id: Optional[DurableId] = None
    new_conversation_title: Optional[str] = None


def history_from_messages(messages: List[ChatMessage]) -> List[HistoryTurn]:
    """Convert a session timeline into the prior turns sent to the model"""
    return [
        HistoryTurn(
            role="model" if isinstance(message, AgentMessage) else "user",
            content=message.content
        )
        for message in conversation_turns(messages)
    ]


def generate_title(text: str) -> str:
    """
    Derive a conversation title from the first user message

    First five words of the (150-char capped) text, "..." when truncated,
    first letter capitalised.
    """
    source = text.strip()
    if len(source) > TITLE_SOURCE_LIMIT:
        source = source[:TITLE_SOURCE_LIMIT] + "..."
    words = source.split(" ")
    title = " ".join(words[:TITLE_WORDS])
    if len(words) > TITLE_WORDS:
        title += "..."
    return title[:1].upper() + title[1:]


def language_instruction(language: Language) -> str:
    return f"Responda sempre em {language.value}."


def build_prompt(request: InvocationRequest) -> List[Dict[str, str]]:
    """System prompt (with language instruction), prior turns, then the new user text"""
    system_message = request.system_prompt or ""
    system_message += f"\n\n{language_instruction(request.language)}"

    messages = [{"role": "system", "content": system_message.strip()}]
    messages.extend({"role": turn.role, "content": turn.content} for turn in request.history)
    messages.append({"role": "user", "content": request.user_text})
    return messages


class ModelInvocationService(ABC):
    """模型调用服务抽象接口"""

    @abstractmethod
    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """
        调用模型

        Raises:
            InvocationError: 调用失败或返回格式不正确
        """
        pass


class EdgeFunctionInvocationService(ModelInvocationService):
    """
    Remote invocation function over HTTP

    Request body:
        {modelId, conversationId, userMessage, systemMessage, language, chatHistory}
    Success body:
        {aiResponse, newConversationId?, newConversationTitle?}
    Error body:
        {error} (any status) or {success: false, message}
    """

    def __init__(
        self,
        url: str,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            url: invocation endpoint
            auth_token: bearer token of the calling user / service
            timeout: HTTP timeout in seconds (None = wait indefinitely)
            transport: custom httpx transport (tests)
        """
        self.url = url
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        payload = {
            "modelId": request.agent_id,
            "conversationId": request.conversation_id.value if request.conversation_id else None,
            "userMessage": request.user_text,
            "systemMessage": request.system_prompt,
            "language": request.language.value,
            "chatHistory": [
                {"role": turn.role, "parts": [{"text": turn.content}]}
                for turn in request.history
            ],
        }
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Invocation request failed: {e}")
            raise InvocationError(f"Invocation request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400 or not isinstance(data, dict):
            detail = data.get("error") if isinstance(data, dict) else None
            detail = detail or f"A função Edge retornou um erro (Status: {response.status_code})."
            logger.error(f"Invocation function error: {detail}")
            raise InvocationError(str(detail))

        if data.get("error") or data.get("success") is False:
            detail = data.get("error") or data.get("message") or "A função Edge retornou um erro."
            raise InvocationError(str(detail))

        reply = data.get("aiResponse")
        if not isinstance(reply, str) or not reply:
            raise InvocationError("A função Edge retornou uma resposta vazia.")

        new_id = data.get("newConversationId")
        return InvocationResult(
            reply_text=reply,
            new_conversation_id=DurableId(value=str(new_id)) if new_id else None,
            new_conversation_title=data.get("newConversationTitle") or None,
        )


class DirectInvocationService(ModelInvocationService):
    """
    In-process invocation backed by the record store

    0. 校验 Agent 存在且当前用户可用、已有会话归属当前用户
    1. 调用 provider（模型失败时不落库，会话不会被提前创建）
    2. 首次发送：创建会话（标题由用户消息生成，语言为请求语言）
    3. 后续发送：刷新会话 updated_at
    4. 保存用户消息和模型回复
    """

    def __init__(self, store: RecordStore, gateway: ProviderGateway):
        self.store = store
        self.gateway = gateway

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        try:
            agent = await self.store.get_agent(request.agent_id)
        except TutorChatError as e:
            raise InvocationError(f"Failed to load agent {request.agent_id}: {e}") from e
        if agent is None:
            raise InvocationError(
                f"Agent not found: {request.agent_id}",
                user_message="Modelo de IA não encontrado."
            )
        caller = SessionContext(user_id=request.user_id, permission=request.permission)
        if not caller.can_use(agent):
            raise InvocationError(
                f"Access denied to agent {agent.id} for user {request.user_id}",
                user_message="Acesso negado ao modelo de IA."
            )

        if request.conversation_id is not None:
            try:
                existing = await self.store.get_conversation(
                    request.conversation_id, request.user_id, request.agent_id
                )
            except TutorChatError as e:
                raise InvocationError(f"Conversation check failed: {e}") from e
            if existing is None:
                raise InvocationError(
                    f"Conversation not found: {request.conversation_id}",
                    user_message="Conversa não encontrada."
                )

        prompt_request = request
        if request.system_prompt is None and agent.system_prompt:
            prompt_request = request.model_copy(update={"system_prompt": agent.system_prompt})

        reply = await self.gateway.complete(agent, build_prompt(prompt_request))

        conversation_id = request.conversation_id
        new_title = None
        if conversation_id is None:
            try:
                conversation = await self.store.create_conversation(
                    user_id=request.user_id,
                    agent_id=request.agent_id,
                    title=generate_title(request.user_text),
                    language=request.language,
                )
            except TutorChatError as e:
                logger.error(f"Error creating new conversation: {e}")
                raise InvocationError(
                    f"Error creating new conversation: {e}",
                    user_message="Erro ao iniciar nova conversa."
                ) from e
            conversation_id = conversation.id
            new_title = conversation.title
            logger.info(f"New conversation created: {conversation_id} ({new_title})")
        else:
            try:
                await self.store.touch_conversation(conversation_id, request.user_id)
            except TutorChatError as e:
                logger.error(f"Error updating conversation timestamp: {e}")

        for role, content in ((MessageRole.USER, request.user_text), (MessageRole.AGENT, reply)):
            try:
                await self.store.append_message(conversation_id, role, content)
            except TutorChatError as e:
                logger.error(f"Error saving {role.value} message to {conversation_id}: {e}")

        return InvocationResult(
            reply_text=reply,
            new_conversation_id=conversation_id if new_title else None,
            new_conversation_title=new_title,
        )


__all__ = [
    "HistoryTurn",
    "InvocationRequest",
    "InvocationResult",
    "ModelInvocationService",
    "EdgeFunctionInvocationService",
    "DirectInvocationService",
    "history_from_messages",
    "generate_title",
    "build_prompt",
]
