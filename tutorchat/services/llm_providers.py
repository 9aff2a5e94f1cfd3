"""
LLM Providers - 语言模型提供商适配

Turns a provider-neutral message list into one completion request per
provider and returns the reply text.

Supported providers (Agent.provider):
- OpenAI / Groq / DeepSeek: OpenAI-compatible chat completions
- Anthropic: messages API (system prompt passed separately)
- Google Gemini: generateContent (no system role; sent as a user turn)

Message roles accepted in `messages`: "system", "user", "model".
"""

import logging
from typing import Dict, List, Optional

import httpx

from tutorchat.errors import InvocationError
from tutorchat.models.chat import Agent

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE_ENDPOINTS = {
    "OpenAI": "https://api.openai.com/v1/chat/completions",
    "Groq": "https://api.groq.com/openai/v1/chat/completions",
    "DeepSeek": "https://api.deepseek.com/chat/completions",
}
ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{variant}:generateContent"

GEMINI_QUOTA_MESSAGE = (
    "Parece que o limite de uso da sua chave de API do Google Gemini foi atingido. "
    "Por favor, verifique seu plano e detalhes de faturamento no Google AI Studio, "
    "ou tente novamente mais tarde."
)
GEMINI_ACCESS_MESSAGE = (
    "Não foi possível acessar o modelo Gemini. Verifique se o modelo está correto "
    "e se sua chave de API tem as permissões necessárias."
)


def _error_detail(response: httpx.Response) -> str:
    """Best-effort extraction of `error.message` from a provider error body"""
    try:
        data = response.json()
    except ValueError:
        return f"Status {response.status_code}"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str):
        return error
    return "Erro desconhecido"


async def _call_openai_compatible(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    api_key: str,
    model: str,
    messages: List[Dict[str, str]],
    max_tokens: int
) -> str:
    """
    调用 OpenAI 兼容的 chat completions API (OpenAI, Groq, DeepSeek)。
    """
    payload = {
        "model": model,
        "messages": [
            {"role": "assistant" if msg["role"] == "model" else msg["role"], "content": msg["content"]}
            for msg in messages
        ],
        "max_tokens": max_tokens,
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json"
    }

    response = await client.post(url, headers=headers, json=payload)
    if response.status_code >= 400:
        detail = _error_detail(response)
        logger.error(f"{provider} API error: {detail}")
        raise InvocationError(
            f"{provider} API error: {detail}",
            user_message=f"Falha na conexão com {provider}: {detail}"
        )

    data = response.json()
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise InvocationError(f"{provider} returned an unexpected payload")


async def _call_anthropic(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    messages: List[Dict[str, str]],
    max_tokens: int
) -> str:
    """
    调用 Anthropic Messages API。
    """
    system_parts = [msg["content"] for msg in messages if msg["role"] == "system"]
    payload = {
        "model": model,
        "messages": [
            {"role": "assistant" if msg["role"] == "model" else "user", "content": msg["content"]}
            for msg in messages
            if msg["role"] != "system"
        ],
        "max_tokens": max_tokens,
    }
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)

    headers = {
        "x-api-key": api_key,
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json"
    }

    response = await client.post(ANTHROPIC_ENDPOINT, headers=headers, json=payload)
    if response.status_code >= 400:
        detail = _error_detail(response)
        logger.error(f"Anthropic API error: {detail}")
        raise InvocationError(
            f"Anthropic API error: {detail}",
            user_message=f"Falha na conexão com Anthropic: {detail}"
        )

    data = response.json()
    try:
        return data["content"][0]["text"]
    except (KeyError, IndexError, TypeError):
        raise InvocationError("Anthropic returned an unexpected payload")


async def _call_gemini(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    messages: List[Dict[str, str]]
) -> str:
    """
    调用 Google Gemini generateContent API。
    """
    payload = {
        "contents": [
            {
                "role": "user" if msg["role"] == "system" else msg["role"],
                "parts": [{"text": msg["content"]}]
            }
            for msg in messages
        ]
    }

    response = await client.post(
        GEMINI_ENDPOINT.format(variant=model),
        params={"key": api_key},
        headers={"Content-Type": "application/json"},
        json=payload
    )
    if response.status_code >= 400:
        detail = _error_detail(response)
        logger.error(f"Gemini API error: {detail}")
        if "Quota exceeded" in detail or "limit: 0" in detail:
            raise InvocationError(f"Gemini quota exceeded: {detail}", user_message=GEMINI_QUOTA_MESSAGE)
        raise InvocationError(f"Gemini API error: {detail}", user_message=GEMINI_ACCESS_MESSAGE)

    data = response.json()
    try:
        return data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        raise InvocationError(
            "Gemini returned an unexpected payload",
            user_message="A API retornou uma resposta vazia ou em formato inesperado."
        )


class ProviderGateway:
    """
    Dispatches completion requests to the agent's provider

    Attributes:
        api_keys: provider name -> API key
        max_tokens: completion length cap
        timeout: HTTP timeout in seconds (None = wait indefinitely)
    """

    def __init__(
        self,
        api_keys: Dict[str, Optional[str]],
        max_tokens: int = 500,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_keys = api_keys
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    def supports(self, provider: str) -> bool:
        return (
            provider in OPENAI_COMPATIBLE_ENDPOINTS
            or provider in ("Anthropic", "Google Gemini")
        )

    async def complete(self, agent: Agent, messages: List[Dict[str, str]]) -> str:
        """
        请求一次补全

        Args:
            agent: Agent 配置（provider, model_variant, 个人密钥 api_key 优先）
            messages: [{"role": "system"|"user"|"model", "content": str}]

        Returns:
            模型回复文本

        Raises:
            InvocationError: 提供商不支持、缺少密钥、HTTP 失败或回复为空
        """
        provider = agent.provider
        if not self.supports(provider):
            raise InvocationError(
                f"Unsupported provider: {provider}",
                user_message=f"Provedor de IA '{provider}' não suportado."
            )

        api_key = agent.api_key or self.api_keys.get(provider)
        if not api_key:
            raise InvocationError(
                f"Missing API key for provider {provider}",
                user_message=f"API Key do provedor {provider} não configurada."
            )

        model = agent.model_variant or agent.model_name
        if not model:
            raise InvocationError(f"Agent {agent.id} has no model variant configured")

        logger.info(f"Invoking {provider} model: {model}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                if provider in OPENAI_COMPATIBLE_ENDPOINTS:
                    reply = await _call_openai_compatible(
                        client,
                        provider=provider,
                        url=OPENAI_COMPATIBLE_ENDPOINTS[provider],
                        api_key=api_key,
                        model=model,
                        messages=messages,
                        max_tokens=self.max_tokens
                    )
                elif provider == "Anthropic":
                    reply = await _call_anthropic(
                        client,
                        api_key=api_key,
                        model=model,
                        messages=messages,
                        max_tokens=self.max_tokens
                    )
                else:
                    reply = await _call_gemini(
                        client,
                        api_key=api_key,
                        model=model,
                        messages=messages
                    )
        except httpx.HTTPError as e:
            logger.error(f"HTTP error invoking {provider}: {e}")
            raise InvocationError(
                f"HTTP error invoking {provider}: {e}",
                user_message=f"Erro ao invocar {provider}: {e}"
            ) from e

        if not reply:
            raise InvocationError(
                f"{provider} returned an empty reply",
                user_message="A API retornou uma resposta vazia ou em formato inesperado."
            )

        logger.info(f"{provider} response received")
        return reply


__all__ = [
    "ProviderGateway",
    "GEMINI_QUOTA_MESSAGE",
    "GEMINI_ACCESS_MESSAGE",
]
