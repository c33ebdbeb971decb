"""Data models for request records and cross-layer communication."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RecordKind(str, Enum):
    """レコード種別."""

    PERMISSION = "permission"
    SELECTION = "selection"


class PermissionStatus(str, Enum):
    """パーミッション要求の状態."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """終端状態かどうか."""
        return self is not PermissionStatus.PENDING


class PermissionDecision(str, Enum):
    """ユーザーによるパーミッション応答."""

    APPROVE = "approve"
    DENY = "deny"


class SelectionStatus(str, Enum):
    """選択肢質問の状態."""

    PENDING = "pending"
    AWAITING_INPUT = "awaiting_input"
    ANSWERED = "answered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        """終端状態かどうか."""
        return self not in {SelectionStatus.PENDING, SelectionStatus.AWAITING_INPUT}


class CallbackAction(str, Enum):
    """インラインボタンのコールバックアクション."""

    APPROVE = "approve"
    DENY = "deny"
    SELECT = "select"
    TOGGLE = "toggle"
    SUBMIT = "submit"
    CUSTOM = "custom"
    CANCEL = "cancel"

    @property
    def kind(self) -> RecordKind:
        """このアクションが対象とするレコード種別."""
        if self in {CallbackAction.APPROVE, CallbackAction.DENY}:
            return RecordKind.PERMISSION
        return RecordKind.SELECTION

    @property
    def takes_option(self) -> bool:
        """optionIndex を伴うアクションかどうか."""
        return self in {CallbackAction.SELECT, CallbackAction.TOGGLE}


class RecordBase(BaseModel):
    """永続化されるリクエストレコードの共通フィールド.

    ファイル上のキーは camelCase（requestId, chatId, ...）で保存する.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    request_id: str
    chat_id: int
    message_id: int | None = None
    timestamp: int
    # 楽観的並行制御用のバージョン（ストアが書き込みごとに更新する）
    version: int = 0


class PermissionRequest(RecordBase):
    """ツール実行の承認要求."""

    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    status: PermissionStatus = PermissionStatus.PENDING
    response: PermissionDecision | None = None
    responded_at: int | None = None
    responded_by: str | None = None


class SelectionOption(BaseModel):
    """選択肢."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int
    label: str
    description: str | None = None


class SelectionRequest(RecordBase):
    """複数選択肢の質問."""

    question: str
    header: str | None = None
    options: list[SelectionOption] = Field(default_factory=list)
    multi_select: bool = False
    status: SelectionStatus = SelectionStatus.PENDING
    selected_indices: list[int] = Field(default_factory=list)
    custom_input: str | None = None

    def option_by_index(self, index: int) -> SelectionOption | None:
        """
        index に対応する選択肢を返す.

        配列位置ではなく SelectionOption.index で検索する.

        Args:
            index: 選択肢のindex

        Returns:
            該当する選択肢。存在しなければNone
        """
        for option in self.options:
            if option.index == index:
                return option
        return None

    def labels_for(self, indices: list[int]) -> list[str]:
        """選択された index に対応するラベルを選択順で返す."""
        labels: list[str] = []
        for index in indices:
            option = self.option_by_index(index)
            if option is not None:
                labels.append(option.label)
        return labels


Record = PermissionRequest | SelectionRequest


class OutcomeStatus(str, Enum):
    """待機結果."""

    APPROVED = "approved"
    DENIED = "denied"
    ANSWERED = "answered"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class WaitOutcome:
    """Waiter の待機結果（Waiter → Hook）."""

    status: OutcomeStatus
    record: Record | None = None

    @property
    def timed_out(self) -> bool:
        """タイムアウト扱いかどうか."""
        return self.status is OutcomeStatus.TIMEOUT


@dataclass(frozen=True)
class TransitionResult:
    """状態遷移の結果（StateMachine → Router）."""

    applied: bool
    record: Record | None
    notice: str


CALLBACK_SEPARATOR = ":"


@dataclass(frozen=True)
class CallbackData:
    """インラインボタンの callback_data（action:requestId[:optionIndex]）."""

    action: CallbackAction
    request_id: str
    option_index: int | None = None

    def encode(self) -> str:
        """callback_data 文字列に変換する."""
        parts = [self.action.value, self.request_id]
        if self.option_index is not None:
            parts.append(str(self.option_index))
        return CALLBACK_SEPARATOR.join(parts)

    @classmethod
    def parse(cls, data: str | None) -> CallbackData | None:
        """
        callback_data 文字列を解釈する.

        select / toggle は optionIndex（非負整数）が必須、それ以外は付けてはならない.

        Args:
            data: callback_data 文字列

        Returns:
            解釈結果。未知のアクションや形式違反の場合はNone
        """
        if not data:
            return None
        parts = data.split(CALLBACK_SEPARATOR)
        try:
            action = CallbackAction(parts[0])
        except ValueError:
            return None

        expected_parts = 3 if action.takes_option else 2
        if len(parts) != expected_parts or not parts[1]:
            return None

        option_index: int | None = None
        if action.takes_option:
            index_text = parts[2]
            if not (index_text.isascii() and index_text.isdigit()):
                return None
            option_index = int(index_text)
        return cls(action=action, request_id=parts[1], option_index=option_index)
