"""File-backed record store shared by the hook and gateway processes."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from telegram_hook_bridge.application.models import (
    PermissionRequest,
    PermissionStatus,
    RecordKind,
    SelectionRequest,
    SelectionStatus,
)
from telegram_hook_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from telegram_hook_bridge.application.models import Record

logger = get_logger(__name__)

SCRATCH_DIR = ".tmp"
LOCK_FILE = ".lock"

# コールバック経由で受け取るIDはパスとして使うため、文字種を制限する
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# ストアが管理するフィールド（updateでの上書きを禁止）
_STORE_OWNED_FIELDS = frozenset({"request_id", "timestamp", "version"})

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class _KindSpec:
    """レコード種別ごとの保存先定義."""

    directory: str
    index_file: str
    id_prefix: str
    model: type[PermissionRequest] | type[SelectionRequest]
    pending_status: PermissionStatus | SelectionStatus


_KIND_SPECS: dict[RecordKind, _KindSpec] = {
    RecordKind.PERMISSION: _KindSpec(
        directory="permissions",
        index_file="permission_index",
        id_prefix="perm",
        model=PermissionRequest,
        pending_status=PermissionStatus.PENDING,
    ),
    RecordKind.SELECTION: _KindSpec(
        directory="selections",
        index_file="selection_index",
        id_prefix="sel",
        model=SelectionRequest,
        pending_status=SelectionStatus.PENDING,
    ),
}


class StaleRecordError(Exception):
    """楽観的並行制御でバージョンが一致しなかった場合の例外."""

    def __init__(
        self, kind: RecordKind, request_id: str, expected: int, actual: int
    ) -> None:
        """
        Initialize StaleRecordError.

        Args:
            kind: レコード種別
            request_id: リクエストID
            expected: 呼び出し側が観測したバージョン
            actual: 保存されている現在のバージョン
        """
        super().__init__(
            f"Stale {kind.value} record {request_id}: "
            f"expected version {expected}, found {actual}"
        )
        self.kind = kind
        self.request_id = request_id
        self.expected = expected
        self.actual = actual


def now_ms() -> int:
    """現在時刻をエポックミリ秒で返す."""
    return int(time.time() * 1000)


def to_base36(value: int) -> str:
    """非負整数を36進数文字列に変換する."""
    if value < 0:
        msg = "value must be non-negative"
        raise ValueError(msg)
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def is_valid_request_id(request_id: str) -> bool:
    """リクエストIDとして安全な文字列かどうか."""
    return bool(_REQUEST_ID_RE.match(request_id))


def atomic_write_text(path: Path, content: str, scratch_dir: Path) -> None:
    """
    一時ファイルに書き込んでからリネームし、読み手に書きかけの内容を見せない.

    一時ファイルは同一ファイルシステム上のスクラッチディレクトリに作成する.

    Args:
        path: 書き込み先
        content: 書き込む内容
        scratch_dir: 一時ファイル用ディレクトリ
    """
    scratch_dir.mkdir(parents=True, exist_ok=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{path.name}.", suffix=".tmp", dir=scratch_dir
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def read_json(path: Path) -> Any | None:
    """JSONファイルを読み込む。存在しない・壊れている場合はNoneを返す."""
    try:
        return json.loads(path.read_bytes())
    except (OSError, ValueError):
        # JSONDecodeError と UnicodeDecodeError はどちらも ValueError
        return None


@contextlib.contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    """
    アドバイザリロックを取得する.

    プロセス間で read-compare-write を直列化するためだけに使い、
    通常の読み取りはロックしない.

    Args:
        lock_path: ロックファイルのパス
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a") as fd:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)


class RecordStore:
    """requestId をキーとしたリクエストレコードのファイルストア."""

    def __init__(self, state_dir: Path) -> None:
        """
        Initialize RecordStore.

        Args:
            state_dir: 状態ディレクトリ（permissions/ と selections/ を配下に持つ）
        """
        self._state_dir = state_dir

    @property
    def state_dir(self) -> Path:
        """状態ディレクトリ."""
        return self._state_dir

    @property
    def scratch_dir(self) -> Path:
        """一時ファイル用ディレクトリ."""
        return self._state_dir / SCRATCH_DIR

    def _kind_dir(self, kind: RecordKind) -> Path:
        return self._state_dir / _KIND_SPECS[kind].directory

    def _record_path(self, kind: RecordKind, request_id: str) -> Path:
        return self._kind_dir(kind) / f"{request_id}.json"

    def _lock(self, kind: RecordKind) -> contextlib.AbstractContextManager[None]:
        return file_lock(self._kind_dir(kind) / LOCK_FILE)

    def _read(self, kind: RecordKind, path: Path) -> Record | None:
        try:
            content = path.read_bytes()
        except OSError:
            return None
        try:
            return _KIND_SPECS[kind].model.model_validate_json(content)
        except ValidationError:
            # 壊れたレコードは「存在しない」と同じ扱い
            logger.warning("Ignoring malformed record file", path=str(path))
            return None

    def _write(self, kind: RecordKind, record: Record) -> None:
        path = self._record_path(kind, record.request_id)
        atomic_write_text(
            path,
            record.model_dump_json(by_alias=True, indent=2),
            self.scratch_dir,
        )

    def _next_id(self, kind: RecordKind) -> str:
        # 呼び出し側でロックを保持していること
        spec = _KIND_SPECS[kind]
        index_path = self._state_dir / spec.index_file
        index = read_json(index_path)
        last_id = 0
        if isinstance(index, dict) and isinstance(index.get("lastId"), int):
            last_id = index["lastId"]
        last_id += 1
        atomic_write_text(index_path, json.dumps({"lastId": last_id}), self.scratch_dir)
        return f"{spec.id_prefix}_{to_base36(now_ms())}_{last_id}"

    def generate_id(self, kind: RecordKind) -> str:
        """
        新しいリクエストIDを生成する.

        36進数のタイムスタンプと、インデックスファイルに永続化した
        単調増加カウンタを組み合わせる.

        Args:
            kind: レコード種別

        Returns:
            生成されたリクエストID
        """
        with self._lock(kind):
            return self._next_id(kind)

    def create(self, kind: RecordKind, fields: Mapping[str, Any]) -> Record:
        """
        レコードを新規作成して保存する.

        requestId, timestamp, status=pending, version はストアが付与する.

        Args:
            kind: レコード種別
            fields: レコードのフィールド（snake_case）

        Returns:
            作成されたレコード
        """
        spec = _KIND_SPECS[kind]
        with self._lock(kind):
            request_id = self._next_id(kind)
            record = spec.model.model_validate(
                {
                    **fields,
                    "request_id": request_id,
                    "timestamp": now_ms(),
                    "status": spec.pending_status,
                    "version": 1,
                }
            )
            self._write(kind, record)

        logger.debug("Record created", kind=kind.value, request_id=request_id)
        return record

    def get(self, kind: RecordKind, request_id: str) -> Record | None:
        """
        レコードを取得する.

        Args:
            kind: レコード種別
            request_id: リクエストID

        Returns:
            レコード。存在しない・壊れている場合はNone
        """
        if not is_valid_request_id(request_id):
            return None
        return self._read(kind, self._record_path(kind, request_id))

    def update(
        self,
        kind: RecordKind,
        request_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Record | None:
        """
        既存レコードにフィールドを浅くマージして保存する.

        expected_version を指定した場合、保存済みバージョンと一致しなければ
        StaleRecordError を送出し、何も書き込まない.

        Args:
            kind: レコード種別
            request_id: リクエストID
            fields: 更新するフィールド（snake_case）
            expected_version: 呼び出し側が観測したバージョン

        Returns:
            更新後のレコード。レコードが存在しない場合はNone

        Raises:
            StaleRecordError: expected_version が現在のバージョンと異なる場合
            ValueError: 未知のフィールド、またはストア管理フィールドを更新しようとした場合
        """
        spec = _KIND_SPECS[kind]
        owned = _STORE_OWNED_FIELDS.intersection(fields)
        if owned:
            msg = f"Fields managed by the store cannot be updated: {sorted(owned)}"
            raise ValueError(msg)
        unknown = set(fields) - set(spec.model.model_fields)
        if unknown:
            msg = f"Unknown {kind.value} fields: {sorted(unknown)}"
            raise ValueError(msg)

        if not is_valid_request_id(request_id):
            return None

        path = self._record_path(kind, request_id)
        with self._lock(kind):
            current = self._read(kind, path)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise StaleRecordError(
                    kind, request_id, expected_version, current.version
                )

            data = current.model_dump()
            data.update(fields)
            data["version"] = current.version + 1
            updated = spec.model.model_validate(data)
            self._write(kind, updated)

        return updated

    def delete(self, kind: RecordKind, request_id: str) -> None:
        """
        レコードを削除する（存在しない場合は何もしない）.

        Args:
            kind: レコード種別
            request_id: リクエストID
        """
        if not is_valid_request_id(request_id):
            return
        self._record_path(kind, request_id).unlink(missing_ok=True)
        logger.debug("Record deleted", kind=kind.value, request_id=request_id)

    def list_all(self, kind: RecordKind) -> list[Record]:
        """
        指定種別の全レコードを返す（壊れたファイルはスキップする）.

        Args:
            kind: レコード種別

        Returns:
            レコード一覧（ファイル名順）
        """
        directory = self._kind_dir(kind)
        if not directory.is_dir():
            return []

        records: list[Record] = []
        for path in sorted(directory.glob("*.json")):
            record = self._read(kind, path)
            if record is not None:
                records.append(record)
        return records
