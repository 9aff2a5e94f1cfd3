"""
Services - chat session core
"""

from .notifier import Notifier
from .navigation import Navigator, RecordingNavigator, chat_route
from .conversation_directory import ConversationDirectory
from .model_invocation import (
    InvocationRequest,
    InvocationResult,
    ModelInvocationService,
    EdgeFunctionInvocationService,
    DirectInvocationService,
)
from .llm_providers import ProviderGateway
from .message_reconciler import MessageReconciler, Reconciliation
from .chat_session import ChatSession
from .session_registry import SessionRegistry, get_session_registry

__all__ = [
    "Notifier",
    "Navigator",
    "RecordingNavigator",
    "chat_route",
    "ConversationDirectory",
    "InvocationRequest",
    "InvocationResult",
    "ModelInvocationService",
    "EdgeFunctionInvocationService",
    "DirectInvocationService",
    "ProviderGateway",
    "MessageReconciler",
    "Reconciliation",
    "ChatSession",
    "SessionRegistry",
    "get_session_registry",
]
