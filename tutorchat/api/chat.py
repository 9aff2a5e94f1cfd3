"""
Chat API routes - AI 对话会话接口
每个 HTTP 会话对应一个 ChatSession；接口只调用状态机的转移方法，
返回会话快照（id 扁平化为字符串）
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from tutorchat.models.chat import ChatMessage, Conversation, IntroMessage
from tutorchat.models.identifiers import is_draft
from tutorchat.models.session import SessionContext
from tutorchat.services.session_registry import RegisteredSession, get_session_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


class CreateSessionRequest(BaseModel):
    """创建会话请求（身份字段见 resolve_session_context）"""
    user_id: str
    agent_id: str
    conversation_id: Optional[str] = None
    permission: Optional[str] = None


class SendMessageRequest(BaseModel):
    """发送消息请求"""
    message: str


class LanguageRequest(BaseModel):
    """切换语言请求"""
    language: str


class SelectConversationRequest(BaseModel):
    """切换会话请求"""
    conversation_id: str


class TitleRequest(BaseModel):
    """重命名请求（title 为空时使用编辑草稿）"""
    title: Optional[str] = None


class SessionResponse(BaseModel):
    """会话快照响应"""
    session_id: str
    route: Optional[str] = None
    phase: str
    sending: bool
    accepted: Optional[bool] = None
    agent: Optional[Dict[str, Any]] = None
    conversation: Optional[Dict[str, Any]] = None
    messages: List[Dict[str, Any]]
    conversation_list: List[Dict[str, Any]]
    language: str
    title_draft: Optional[str] = None
    notifications: List[Dict[str, Any]]


def _conversation_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id.value,
        "title": conversation.title,
        "language": conversation.language.value,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


def _message_dict(message: ChatMessage) -> Dict[str, Any]:
    data = {
        "id": str(message.id),
        "local": message.id.kind == "local",
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
    }
    if isinstance(message, IntroMessage):
        data["conversation_id"] = None
        data["is_error"] = False
    else:
        ref = message.conversation_id
        data["conversation_id"] = None if is_draft(ref) else ref.value
        data["is_error"] = getattr(message, "is_error", False)
    return data


def _session_response(entry: RegisteredSession, accepted: Optional[bool] = None) -> SessionResponse:
    chat = entry.chat
    snapshot = chat.snapshot()
    notifications = chat.notifier.drain()
    return SessionResponse(
        session_id=entry.session_id,
        route=entry.navigator.current,
        phase=snapshot.phase.value,
        sending=snapshot.sending,
        accepted=accepted,
        agent=snapshot.agent.model_dump(exclude={"api_key"}) if snapshot.agent else None,
        conversation=_conversation_dict(snapshot.conversation) if snapshot.conversation else None,
        messages=[_message_dict(message) for message in snapshot.messages],
        conversation_list=[_conversation_dict(conv) for conv in snapshot.conversation_list],
        language=snapshot.language.value,
        title_draft=snapshot.title_draft,
        notifications=[
            {"level": n.level.value, "message": n.message, "created_at": n.created_at.isoformat()}
            for n in notifications
        ],
    )


def resolve_session_context(req: CreateSessionRequest) -> SessionContext:
    """
    调用方身份的唯一入口

    这里直接信任请求体中的 user_id / permission；接入认证后应改为从
    已验证的 token 中读取，其余接口只使用会话里保存的 context
    """
    return SessionContext(user_id=req.user_id, permission=req.permission)


def _get_entry(session_id: str) -> RegisteredSession:
    entry = get_session_registry().get_session(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="会话不存在")
    return entry


@router.post("/sessions", response_model=SessionResponse)
async def create_session(req: CreateSessionRequest):
    """
    创建会话并初始化

    conversation_id 为空时进入草稿会话；Agent 或会话不可用时
    phase 为 redirected，route 为跳转目标
    """
    try:
        registry = get_session_registry()
        entry = registry.create_session(resolve_session_context(req))
        await entry.chat.initialize(entry.context, req.agent_id, req.conversation_id)
        return _session_response(entry)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create session error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    """获取会话快照"""
    return _session_response(_get_entry(session_id))


@router.post("/sessions/{session_id}/messages", response_model=SessionResponse)
async def send_message(session_id: str, req: SendMessageRequest):
    """
    发送消息（等待模型回复）

    accepted=False 表示消息被忽略（空白、正在发送中）或发送失败
    """
    entry = _get_entry(session_id)
    try:
        accepted = await entry.chat.send_message(req.message)
        return _session_response(entry, accepted=accepted)
    except Exception as e:
        logger.error(f"Send message error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sessions/{session_id}/language", response_model=SessionResponse)
async def switch_language(session_id: str, req: LanguageRequest):
    """切换当前会话的回复语言"""
    entry = _get_entry(session_id)
    accepted = await entry.chat.switch_language(req.language)
    return _session_response(entry, accepted=accepted)


@router.post("/sessions/{session_id}/new-chat", response_model=SessionResponse)
async def start_new_chat(session_id: str):
    """开始新的草稿会话"""
    entry = _get_entry(session_id)
    accepted = entry.chat.start_new_chat()
    return _session_response(entry, accepted=accepted)


@router.post("/sessions/{session_id}/select", response_model=SessionResponse)
async def select_conversation(session_id: str, req: SelectConversationRequest):
    """打开同一 Agent 的历史会话"""
    entry = _get_entry(session_id)
    await entry.chat.select_conversation(req.conversation_id)
    return _session_response(entry)


@router.post("/sessions/{session_id}/title", response_model=SessionResponse)
async def rename_conversation(session_id: str, req: TitleRequest):
    """重命名当前会话"""
    entry = _get_entry(session_id)
    accepted = await entry.chat.rename_conversation(req.title)
    return _session_response(entry, accepted=accepted)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    """删除会话"""
    deleted = await get_session_registry().delete_session(session_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="会话不存在")
    return {"session_id": session_id, "status": "deleted"}
