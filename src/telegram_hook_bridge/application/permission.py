"""Tool permission request state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from telegram_hook_bridge.application.models import (
    PermissionDecision,
    PermissionRequest,
    PermissionStatus,
    RecordKind,
)
from telegram_hook_bridge.application.transition import (
    already_notice,
    apply_transition,
    expire,
)
from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.store import now_ms

if TYPE_CHECKING:
    from collections.abc import Mapping

    from telegram_hook_bridge.application.models import TransitionResult
    from telegram_hook_bridge.infrastructure.store import RecordStore

logger = get_logger(__name__)

_DECISION_STATUS = {
    PermissionDecision.APPROVE: PermissionStatus.APPROVED,
    PermissionDecision.DENY: PermissionStatus.DENIED,
}

_DECISION_NOTICE = {
    PermissionDecision.APPROVE: "✅ Approved",
    PermissionDecision.DENY: "❌ Denied",
}


class PermissionService:
    """ツール実行の承認要求を管理するサービス.

    pending → approved | denied | expired の一方向の遷移のみを許可する.
    """

    def __init__(self, store: RecordStore) -> None:
        """
        Initialize PermissionService.

        Args:
            store: レコードストア
        """
        self._store = store

    @property
    def store(self) -> RecordStore:
        """レコードストア."""
        return self._store

    def create_request(
        self,
        tool_name: str,
        tool_input: Mapping[str, Any] | None,
        chat_id: int,
    ) -> PermissionRequest:
        """
        承認要求を作成する.

        Args:
            tool_name: ツール名
            tool_input: ツールの入力パラメータ（表示用）
            chat_id: 通知先チャットID

        Returns:
            作成された承認要求
        """
        record = self._store.create(
            RecordKind.PERMISSION,
            {
                "tool_name": tool_name,
                "tool_input": dict(tool_input or {}),
                "chat_id": chat_id,
            },
        )
        logger.info(
            "Permission request created",
            request_id=record.request_id,
            tool_name=tool_name,
            chat_id=chat_id,
        )
        return record  # type: ignore[return-value]

    def attach_message(
        self, request_id: str, message_id: int
    ) -> PermissionRequest | None:
        """
        承認ボタン付きメッセージのIDを記録する.

        Args:
            request_id: リクエストID
            message_id: 送信したメッセージのID

        Returns:
            更新後の承認要求。存在しない場合はNone
        """
        return self._store.update(  # type: ignore[return-value]
            RecordKind.PERMISSION, request_id, {"message_id": message_id}
        )

    def get(self, request_id: str) -> PermissionRequest | None:
        """承認要求を取得する."""
        return self._store.get(RecordKind.PERMISSION, request_id)  # type: ignore[return-value]

    def delete(self, request_id: str) -> None:
        """承認要求を削除する."""
        self._store.delete(RecordKind.PERMISSION, request_id)

    def list_all(self) -> list[PermissionRequest]:
        """全ての承認要求を返す."""
        return self._store.list_all(RecordKind.PERMISSION)  # type: ignore[return-value]

    def resolve(
        self,
        request_id: str,
        decision: PermissionDecision,
        actor: str | None = None,
    ) -> TransitionResult:
        """
        承認または拒否を適用する.

        pending の場合のみ遷移する。既に終端状態であれば
        "Already {status}" を通知して何も変更しない.

        Args:
            request_id: リクエストID
            decision: 承認/拒否
            actor: 操作したユーザーの表示名

        Returns:
            遷移結果
        """

        def decide(record: PermissionRequest) -> tuple[dict[str, Any] | None, str]:
            if record.status is not PermissionStatus.PENDING:
                return None, already_notice(record)
            return (
                {
                    "status": _DECISION_STATUS[decision],
                    "response": decision,
                    "responded_at": now_ms(),
                    "responded_by": actor,
                },
                _DECISION_NOTICE[decision],
            )

        result = apply_transition(
            self._store, RecordKind.PERMISSION, request_id, decide
        )
        if result.applied:
            logger.info(
                "Permission request resolved",
                request_id=request_id,
                decision=decision.value,
                actor=actor,
            )
        return result

    def expire(self, request_id: str) -> TransitionResult:
        """未解決の承認要求を expired にする."""
        return expire(self._store, RecordKind.PERMISSION, request_id)
