"""Reclamation of orphaned and long-resolved request records."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from telegram_hook_bridge.application.models import RecordKind
from telegram_hook_bridge.application.transition import expire
from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.store import now_ms

if TYPE_CHECKING:
    from telegram_hook_bridge.application.models import Record
    from telegram_hook_bridge.infrastructure.store import RecordStore

ExpiredCallback = Callable[["Record"], Awaitable[None]]

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """スイープ結果."""

    expired: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        """回収したレコード数."""
        return self.expired + self.deleted


class Sweeper:
    """待機中のプロセスが残さなかったレコードを回収する.

    Hook プロセスが強制終了された場合、pending のレコードが残る.
    一定時間を過ぎた未解決レコードは expired にしてから削除し、
    解決済みのまま残ったレコードは保持期間を過ぎたら削除する.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        stale_request_ms: int,
        resolved_retention_ms: int,
        on_expired: ExpiredCallback | None = None,
    ) -> None:
        """
        Initialize Sweeper.

        Args:
            store: レコードストア
            stale_request_ms: 未解決レコードを放置とみなすまでの時間
            resolved_retention_ms: 解決済みレコードの保持時間
            on_expired: 期限切れにしたレコードの通知コールバック
        """
        self._store = store
        self._stale_request_ms = stale_request_ms
        self._resolved_retention_ms = resolved_retention_ms
        self._on_expired = on_expired

    async def sweep(self, now: int | None = None) -> SweepReport:
        """
        全種別のレコードを1回走査する.

        Args:
            now: 基準時刻（エポックミリ秒、省略時は現在時刻）

        Returns:
            スイープ結果
        """
        current = now if now is not None else now_ms()
        report = SweepReport()

        for kind in RecordKind:
            for record in self._store.list_all(kind):
                age = current - record.timestamp
                if record.status.is_terminal:
                    if age > self._resolved_retention_ms:
                        self._store.delete(kind, record.request_id)
                        report.deleted += 1
                elif age > self._stale_request_ms:
                    if await self._expire(kind, record):
                        report.expired += 1

        if report.total:
            logger.info(
                "Sweep reclaimed records",
                expired=report.expired,
                deleted=report.deleted,
            )
        return report

    async def _expire(self, kind: RecordKind, record: Record) -> bool:
        result = expire(self._store, kind, record.request_id)
        if not result.applied or result.record is None:
            # 走査中に解決された場合は次回以降に任せる
            return False

        logger.info(
            "Expired orphaned request",
            kind=kind.value,
            request_id=record.request_id,
        )
        if self._on_expired is not None:
            try:
                await self._on_expired(result.record)
            except Exception:
                logger.exception(
                    "Expiry notification failed",
                    kind=kind.value,
                    request_id=record.request_id,
                )
        self._store.delete(kind, record.request_id)
        return True
