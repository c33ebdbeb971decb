"""Application layer."""

from telegram_hook_bridge.application.models import (
    CallbackAction,
    CallbackData,
    OutcomeStatus,
    PermissionDecision,
    PermissionRequest,
    PermissionStatus,
    Record,
    RecordKind,
    SelectionOption,
    SelectionRequest,
    SelectionStatus,
    TransitionResult,
    WaitOutcome,
)

__all__ = [
    "CallbackAction",
    "CallbackData",
    "OutcomeStatus",
    "PermissionDecision",
    "PermissionRequest",
    "PermissionStatus",
    "Record",
    "RecordKind",
    "SelectionOption",
    "SelectionRequest",
    "SelectionStatus",
    "TransitionResult",
    "WaitOutcome",
]
