"""Polling wait used by hook processes to block until a request is resolved."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from telegram_hook_bridge.application.models import (
    OutcomeStatus,
    PermissionStatus,
    SelectionStatus,
    WaitOutcome,
)
from telegram_hook_bridge.application.transition import expire
from telegram_hook_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from telegram_hook_bridge.application.models import Record, RecordKind
    from telegram_hook_bridge.infrastructure.store import RecordStore

# タイムアウト時の通知コールバック（メッセージを「TIMED OUT」に書き換える）
TimeoutCallback = Callable[["Record"], Awaitable[None]]

logger = get_logger(__name__)

_TERMINAL_OUTCOMES: dict[PermissionStatus | SelectionStatus, OutcomeStatus] = {
    PermissionStatus.APPROVED: OutcomeStatus.APPROVED,
    PermissionStatus.DENIED: OutcomeStatus.DENIED,
    PermissionStatus.EXPIRED: OutcomeStatus.TIMEOUT,
    SelectionStatus.ANSWERED: OutcomeStatus.ANSWERED,
    SelectionStatus.CANCELLED: OutcomeStatus.CANCELLED,
    SelectionStatus.EXPIRED: OutcomeStatus.TIMEOUT,
}


class Waiter:
    """レコードが終端状態になるまでポーリングで待機する."""

    def __init__(self, store: RecordStore) -> None:
        """
        Initialize Waiter.

        Args:
            store: レコードストア
        """
        self._store = store

    def _finish(self, kind: RecordKind, record: Record) -> WaitOutcome:
        self._store.delete(kind, record.request_id)
        return WaitOutcome(status=_TERMINAL_OUTCOMES[record.status], record=record)

    async def wait(
        self,
        kind: RecordKind,
        request_id: str,
        *,
        timeout_ms: int,
        poll_interval_ms: int,
        on_timeout: TimeoutCallback | None = None,
    ) -> WaitOutcome:
        """
        レコードが終端状態になるまで待機する.

        - レコードが消えた場合は即座にタイムアウト扱い
        - 終端状態を観測したらレコードを削除して対応する結果を返す
        - 期限切れの場合は expired を書き込み、通知コールバックを呼んでから
          レコードを削除してタイムアウトを返す

        Args:
            kind: レコード種別
            request_id: リクエストID
            timeout_ms: タイムアウト（ミリ秒）
            poll_interval_ms: ポーリング間隔（ミリ秒）
            on_timeout: タイムアウト時の通知コールバック（失敗しても結果は返す）

        Returns:
            待機結果
        """
        deadline = time.monotonic() + timeout_ms / 1000
        interval = poll_interval_ms / 1000

        while True:
            record = self._store.get(kind, request_id)
            if record is None:
                logger.warning(
                    "Request disappeared while waiting",
                    kind=kind.value,
                    request_id=request_id,
                )
                return WaitOutcome(status=OutcomeStatus.TIMEOUT)

            if record.status.is_terminal:
                outcome = self._finish(kind, record)
                logger.info(
                    "Request resolved",
                    kind=kind.value,
                    request_id=request_id,
                    outcome=outcome.status.value,
                )
                return outcome

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

        return await self._expire(kind, request_id, on_timeout)

    async def _expire(
        self,
        kind: RecordKind,
        request_id: str,
        on_timeout: TimeoutCallback | None,
    ) -> WaitOutcome:
        result = expire(self._store, kind, request_id)
        record = result.record
        if record is None:
            return WaitOutcome(status=OutcomeStatus.TIMEOUT)

        if not result.applied and record.status.is_terminal:
            # 期限切れ直前に届いた解決を優先する
            outcome = self._finish(kind, record)
            logger.info(
                "Request resolved at deadline",
                kind=kind.value,
                request_id=request_id,
                outcome=outcome.status.value,
            )
            return outcome

        logger.info("Request timed out", kind=kind.value, request_id=request_id)
        if on_timeout is not None:
            try:
                await on_timeout(record)
            except Exception:
                logger.exception(
                    "Timeout notification failed",
                    kind=kind.value,
                    request_id=request_id,
                )

        self._store.delete(kind, request_id)
        return WaitOutcome(status=OutcomeStatus.TIMEOUT, record=record)
