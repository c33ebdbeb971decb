"""Compare-and-set transitions over stored request records."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from telegram_hook_bridge.application.models import (
    PermissionStatus,
    RecordKind,
    SelectionStatus,
    TransitionResult,
)
from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.store import StaleRecordError

if TYPE_CHECKING:
    from telegram_hook_bridge.application.models import Record
    from telegram_hook_bridge.infrastructure.store import RecordStore

logger = get_logger(__name__)

# 競合時に再読み込みして遷移を試み直す回数
MAX_TRANSITION_ATTEMPTS = 3

NOT_FOUND_NOTICE = "Request not found or expired"
BUSY_NOTICE = "Request is busy, please try again"

# (record) -> (更新フィールド または None, 通知文)
# None を返した場合は遷移を拒否し、通知文だけをユーザーに返す
Decision = Callable[[Any], tuple[dict[str, Any] | None, str]]

_EXPIRED_STATUS: dict[RecordKind, PermissionStatus | SelectionStatus] = {
    RecordKind.PERMISSION: PermissionStatus.EXPIRED,
    RecordKind.SELECTION: SelectionStatus.EXPIRED,
}


def already_notice(record: Record) -> str:
    """終端状態のレコードに対する通知文."""
    return f"Already {record.status.value}"


def apply_transition(
    store: RecordStore,
    kind: RecordKind,
    request_id: str,
    decide: Decision,
) -> TransitionResult:
    """
    レコードを読み、decide の判断に従って条件付きで更新する.

    読み込んだバージョンを expected_version として渡すため、
    読み込みから書き込みまでの間に他プロセスが更新していた場合は
    書き込まずに再読み込みし、新しい状態に対して判断し直す.

    Args:
        store: レコードストア
        kind: レコード種別
        request_id: リクエストID
        decide: 現在のレコードから更新内容と通知文を決める関数

    Returns:
        遷移結果
    """
    for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
        record = store.get(kind, request_id)
        if record is None:
            return TransitionResult(applied=False, record=None, notice=NOT_FOUND_NOTICE)

        changes, notice = decide(record)
        if changes is None:
            return TransitionResult(applied=False, record=record, notice=notice)

        try:
            updated = store.update(
                kind, request_id, changes, expected_version=record.version
            )
        except StaleRecordError as e:
            logger.debug(
                "Transition conflict, retrying",
                kind=kind.value,
                request_id=request_id,
                attempt=attempt,
                expected_version=e.expected,
                actual_version=e.actual,
            )
            continue

        if updated is None:
            return TransitionResult(applied=False, record=None, notice=NOT_FOUND_NOTICE)
        return TransitionResult(applied=True, record=updated, notice=notice)

    logger.warning(
        "Transition abandoned after repeated conflicts",
        kind=kind.value,
        request_id=request_id,
    )
    return TransitionResult(
        applied=False, record=store.get(kind, request_id), notice=BUSY_NOTICE
    )


def expire(store: RecordStore, kind: RecordKind, request_id: str) -> TransitionResult:
    """
    未解決のレコードを expired に遷移させる.

    既に終端状態の場合は何もしない（先に着いた解決が優先される）.

    Args:
        store: レコードストア
        kind: レコード種別
        request_id: リクエストID

    Returns:
        遷移結果
    """

    def decide(record: Record) -> tuple[dict[str, Any] | None, str]:
        if record.status.is_terminal:
            return None, already_notice(record)
        return {"status": _EXPIRED_STATUS[kind]}, "Expired"

    return apply_transition(store, kind, request_id, decide)
