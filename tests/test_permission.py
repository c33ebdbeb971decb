"""Tests for the permission request state machine and transition helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from telegram_hook_bridge.application.models import (
    PermissionDecision,
    PermissionStatus,
    RecordKind,
)
from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.transition import (
    BUSY_NOTICE,
    MAX_TRANSITION_ATTEMPTS,
    NOT_FOUND_NOTICE,
    apply_transition,
)
from telegram_hook_bridge.infrastructure.store import RecordStore

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    """テスト用のストアを返す."""
    return RecordStore(tmp_path)


@pytest.fixture
def service(store: RecordStore) -> PermissionService:
    """テスト用の PermissionService を返す."""
    return PermissionService(store)


class TestCreateRequest:
    """create_request のテスト."""

    def test_create_pending(self, service: PermissionService) -> None:
        """pending 状態で作成されることを確認する."""
        record = service.create_request("Bash", {"command": "ls"}, chat_id=10)

        assert record.status is PermissionStatus.PENDING
        assert record.tool_name == "Bash"
        assert record.tool_input == {"command": "ls"}
        assert record.chat_id == 10
        assert record.response is None
        assert service.get(record.request_id) == record

    def test_create_without_input(self, service: PermissionService) -> None:
        """ツール入力が None の場合は空の辞書になることを確認する."""
        record = service.create_request("Read", None, chat_id=10)

        assert record.tool_input == {}

    def test_attach_message(self, service: PermissionService) -> None:
        """メッセージIDを記録できることを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)

        updated = service.attach_message(record.request_id, 99)

        assert updated is not None
        assert updated.message_id == 99
        assert updated.status is PermissionStatus.PENDING


class TestResolve:
    """resolve のテスト."""

    def test_approve(self, service: PermissionService) -> None:
        """承認で approved に遷移することを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)

        result = service.resolve(record.request_id, PermissionDecision.APPROVE, "@alice")

        assert result.applied
        assert result.notice == "✅ Approved"
        assert result.record is not None
        assert result.record.status is PermissionStatus.APPROVED
        assert result.record.response is PermissionDecision.APPROVE
        assert result.record.responded_by == "@alice"
        assert result.record.responded_at is not None

    def test_deny(self, service: PermissionService) -> None:
        """拒否で denied に遷移することを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)

        result = service.resolve(record.request_id, PermissionDecision.DENY)

        assert result.applied
        assert result.notice == "❌ Denied"
        assert result.record is not None
        assert result.record.status is PermissionStatus.DENIED
        assert result.record.responded_by is None

    def test_second_approve_reports_already(self, service: PermissionService) -> None:
        """2回目の承認で "Already approved" を返し、応答時刻が変わらないことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        first = service.resolve(record.request_id, PermissionDecision.APPROVE)
        assert first.record is not None

        second = service.resolve(record.request_id, PermissionDecision.APPROVE)

        assert not second.applied
        assert second.notice == "Already approved"
        stored = service.get(record.request_id)
        assert stored is not None
        assert stored.responded_at == first.record.responded_at
        assert stored.version == first.record.version

    def test_deny_after_approve_is_rejected(self, service: PermissionService) -> None:
        """終端状態から別の終端状態へ遷移しないことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        service.resolve(record.request_id, PermissionDecision.APPROVE)

        result = service.resolve(record.request_id, PermissionDecision.DENY)

        assert not result.applied
        assert result.notice == "Already approved"
        stored = service.get(record.request_id)
        assert stored is not None
        assert stored.status is PermissionStatus.APPROVED

    def test_resolve_missing(self, service: PermissionService) -> None:
        """存在しない要求で not found を返すことを確認する."""
        result = service.resolve("perm_gone_1", PermissionDecision.APPROVE)

        assert not result.applied
        assert result.record is None
        assert result.notice == NOT_FOUND_NOTICE


class TestExpire:
    """expire のテスト."""

    def test_expire_pending(self, service: PermissionService) -> None:
        """pending の要求が expired になることを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)

        result = service.expire(record.request_id)

        assert result.applied
        assert result.record is not None
        assert result.record.status is PermissionStatus.EXPIRED

    def test_expire_does_not_override_resolution(
        self, service: PermissionService
    ) -> None:
        """先に解決された要求は expired にならないことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        service.resolve(record.request_id, PermissionDecision.DENY)

        result = service.expire(record.request_id)

        assert not result.applied
        assert result.notice == "Already denied"

    def test_approve_after_expire(self, service: PermissionService) -> None:
        """expired の要求は承認できないことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        service.expire(record.request_id)

        result = service.resolve(record.request_id, PermissionDecision.APPROVE)

        assert not result.applied
        assert result.notice == "Already expired"


class TestApplyTransition:
    """apply_transition の競合処理のテスト."""

    def test_retries_after_concurrent_write(
        self, store: RecordStore, service: PermissionService
    ) -> None:
        """読み込み後に他者が更新した場合、再読み込みして判断し直すことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        seen_versions: list[int] = []

        def decide(current: Any) -> tuple[dict[str, Any] | None, str]:
            seen_versions.append(current.version)
            if len(seen_versions) == 1:
                # 判断中に別プロセスがメッセージIDを書き込んだ状況
                store.update(RecordKind.PERMISSION, record.request_id, {"message_id": 5})
            return {"status": PermissionStatus.APPROVED}, "ok"

        result = apply_transition(store, RecordKind.PERMISSION, record.request_id, decide)

        assert result.applied
        assert seen_versions == [1, 2]
        assert result.record is not None
        assert result.record.message_id == 5
        assert result.record.status is PermissionStatus.APPROVED

    def test_concurrent_resolution_wins(
        self, store: RecordStore, service: PermissionService
    ) -> None:
        """競合中に他者が解決した場合、その解決が優先されることを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        calls = 0

        def decide(current: Any) -> tuple[dict[str, Any] | None, str]:
            nonlocal calls
            calls += 1
            if current.status.is_terminal:
                return None, f"Already {current.status.value}"
            if calls == 1:
                service.resolve(record.request_id, PermissionDecision.DENY)
            return {"status": PermissionStatus.APPROVED}, "ok"

        result = apply_transition(store, RecordKind.PERMISSION, record.request_id, decide)

        assert not result.applied
        assert result.notice == "Already denied"

    def test_gives_up_after_repeated_conflicts(
        self, store: RecordStore, service: PermissionService
    ) -> None:
        """競合が続いた場合に busy を返して書き込まないことを確認する."""
        record = service.create_request("Bash", {}, chat_id=10)
        calls = 0

        def decide(current: Any) -> tuple[dict[str, Any] | None, str]:
            nonlocal calls
            calls += 1
            store.update(RecordKind.PERMISSION, record.request_id, {"message_id": calls})
            return {"status": PermissionStatus.APPROVED}, "ok"

        result = apply_transition(store, RecordKind.PERMISSION, record.request_id, decide)

        assert not result.applied
        assert result.notice == BUSY_NOTICE
        assert calls == MAX_TRANSITION_ATTEMPTS
        assert result.record is not None
        assert result.record.status is PermissionStatus.PENDING
