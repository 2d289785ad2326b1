"""Top-level package for the HealthAssist conversation core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .attachments import AttachmentPipeline
    from .client import HealthAssistClient
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        AuthError,
        BusyError,
        ConfigValidationError,
        HealthAssistError,
        NoActiveConversationError,
        ResponderError,
        StoreError,
        UploadError,
    )
    from .lifecycle import ConversationLifecycleManager
    from .models import Attachment, Conversation, IntakeDetails, Message, Role
    from .pipeline import SendPipeline
    from .session import SessionContext
    from .state import LifecycleState, StateManager
    from .transcript import ChatState, Transcript

__all__ = [
    "Attachment",
    "AttachmentPipeline",
    "AuthError",
    "BusyError",
    "ChatState",
    "ConfigValidationError",
    "Conversation",
    "ConversationLifecycleManager",
    "HealthAssistClient",
    "HealthAssistError",
    "IntakeDetails",
    "LifecycleState",
    "Message",
    "NoActiveConversationError",
    "ResponderError",
    "Role",
    "SendPipeline",
    "SessionContext",
    "StateManager",
    "StoreError",
    "Transcript",
    "UploadError",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTIONS = {
    "AuthError",
    "BusyError",
    "ConfigValidationError",
    "HealthAssistError",
    "NoActiveConversationError",
    "ResponderError",
    "StoreError",
    "UploadError",
}
_MODELS = {"Attachment", "Conversation", "IntakeDetails", "Message", "Role"}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package does not pull in httpx."""
    if name == "HealthAssistClient":
        from .client import HealthAssistClient

        return HealthAssistClient
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)
    if name in _MODELS:
        from . import models

        return getattr(models, name)
    if name in {"LifecycleState", "StateManager"}:
        from .state import LifecycleState, StateManager

        return {"LifecycleState": LifecycleState, "StateManager": StateManager}[name]
    if name in {"ChatState", "Transcript"}:
        from .transcript import ChatState, Transcript

        return {"ChatState": ChatState, "Transcript": Transcript}[name]
    if name == "AttachmentPipeline":
        from .attachments import AttachmentPipeline

        return AttachmentPipeline
    if name == "SendPipeline":
        from .pipeline import SendPipeline

        return SendPipeline
    if name == "ConversationLifecycleManager":
        from .lifecycle import ConversationLifecycleManager

        return ConversationLifecycleManager
    if name == "SessionContext":
        from .session import SessionContext

        return SessionContext
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
