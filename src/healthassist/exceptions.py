"""Domain exception hierarchy for the HealthAssist conversation core."""

from __future__ import annotations


class HealthAssistError(RuntimeError):
    """Base class for all domain-level errors."""


class AuthError(HealthAssistError):
    """Raised when the session is invalid or has expired."""


class StoreError(HealthAssistError):
    """Raised when a persistent store operation fails."""


class NotFoundError(StoreError):
    """Raised when a store row targeted by an update does not exist."""


class UploadError(HealthAssistError):
    """Raised when an attachment cannot be uploaded."""

    def __init__(self, message: str, reason: str = "store-rejected") -> None:
        super().__init__(message)
        self.reason = reason


class ResponderError(HealthAssistError):
    """Raised when the responder call fails or yields no reply."""

    def __init__(self, message: str, reason: str = "network") -> None:
        super().__init__(message)
        self.reason = reason


class NoActiveConversationError(HealthAssistError):
    """Raised when an operation needs a current conversation and there is none."""


class BusyError(HealthAssistError):
    """Raised when a send is already in flight for the same conversation."""


class IntakeValidationError(HealthAssistError):
    """Raised when submitted intake details fail validation."""


class ConfigValidationError(HealthAssistError):
    """Raised when configuration cannot be validated safely."""


class LifecycleError(HealthAssistError):
    """Raised when an operation is not allowed in the current lifecycle state."""
