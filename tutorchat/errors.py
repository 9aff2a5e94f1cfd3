"""
Error taxonomy for the chat core

- NotFoundError / AccessDeniedError: fatal to ChatSession.initialize (redirect)
- InvocationError: model service failed or answered with a malformed payload
- RecordStoreError: any storage failure (PersistenceError on title/language writes)
"""


class TutorChatError(Exception):
    """Base error of the tutorchat package"""


class NotFoundError(TutorChatError):
    """Agent or conversation does not exist"""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class AccessDeniedError(TutorChatError):
    """Record exists but does not belong to the requesting user/agent"""

    def __init__(self, kind: str, identifier: str, reason: str = ""):
        self.kind = kind
        self.identifier = identifier
        self.reason = reason
        message = f"Access denied to {kind} {identifier}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class RecordStoreError(TutorChatError):
    """Storage backend failure"""


# Title / language writes surface this name in the session layer
PersistenceError = RecordStoreError


class InvocationError(TutorChatError):
    """
    Model invocation failure

    Attributes:
        user_message: text suitable for display in the chat timeline
    """

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


class ReconciliationError(InvocationError):
    """Invocation succeeded but the response cannot be bound to a conversation"""


__all__ = [
    "TutorChatError",
    "NotFoundError",
    "AccessDeniedError",
    "RecordStoreError",
    "PersistenceError",
    "InvocationError",
    "ReconciliationError",
]
