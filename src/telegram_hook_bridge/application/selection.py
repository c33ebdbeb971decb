"""Multiple-choice question state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from telegram_hook_bridge.application.models import (
    RecordKind,
    SelectionOption,
    SelectionRequest,
    SelectionStatus,
    TransitionResult,
)
from telegram_hook_bridge.application.transition import (
    already_notice,
    apply_transition,
    expire,
)
from telegram_hook_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from telegram_hook_bridge.infrastructure.store import RecordStore

logger = get_logger(__name__)

INVALID_OPTION_NOTICE = "Invalid option"
MULTI_SELECT_ONLY_NOTICE = "This question allows a single choice"
SINGLE_SELECT_ONLY_NOTICE = "Use the checkboxes, then Submit"
EMPTY_SUBMIT_NOTICE = "Select at least one option first"
AWAITING_INPUT_NOTICE = "Waiting for your typed answer"
INPUT_BUSY_NOTICE = "Another question is already waiting for a typed answer"
NO_AWAITING_NOTICE = "No question is waiting for a typed answer"

Changes = tuple[dict[str, Any] | None, str]


def normalize_options(
    options: Iterable[SelectionOption | Mapping[str, Any] | str],
) -> list[SelectionOption]:
    """
    選択肢を SelectionOption のリストに正規化する.

    index が指定されていない選択肢には並び順の位置を割り当てる.
    作成後は index が唯一の識別子になるため、重複は許可しない.

    Args:
        options: 選択肢（SelectionOption / dict / ラベル文字列）

    Returns:
        正規化された選択肢

    Raises:
        ValueError: index が重複している場合
    """
    normalized: list[SelectionOption] = []
    for position, option in enumerate(options):
        if isinstance(option, SelectionOption):
            normalized.append(option)
        elif isinstance(option, str):
            normalized.append(SelectionOption(index=position, label=option))
        else:
            data = dict(option)
            data.setdefault("index", position)
            normalized.append(SelectionOption.model_validate(data))

    indices = [option.index for option in normalized]
    if len(set(indices)) != len(indices):
        msg = f"Duplicate option indices: {indices}"
        raise ValueError(msg)
    return normalized


def _guard_pending(record: SelectionRequest) -> str | None:
    """pending 以外の状態であれば拒否理由を返す."""
    if record.status is SelectionStatus.AWAITING_INPUT:
        return AWAITING_INPUT_NOTICE
    if record.status is not SelectionStatus.PENDING:
        return already_notice(record)
    return None


class SelectionService:
    """選択肢質問を管理するサービス.

    単一選択ではボタン1回で answered に遷移し、複数選択では
    toggle で selected_indices を更新してから submit で確定する.
    どちらのモードでも自由入力（awaiting_input）とキャンセルが可能.
    """

    def __init__(self, store: RecordStore) -> None:
        """
        Initialize SelectionService.

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
        question: str,
        options: Iterable[SelectionOption | Mapping[str, Any] | str],
        multi_select: bool,
        chat_id: int,
        header: str | None = None,
    ) -> SelectionRequest:
        """
        選択肢質問を作成する.

        Args:
            question: 質問文
            options: 選択肢
            multi_select: 複数選択かどうか
            chat_id: 通知先チャットID
            header: 短いタイトル

        Returns:
            作成された質問
        """
        record = self._store.create(
            RecordKind.SELECTION,
            {
                "question": question,
                "header": header,
                "options": normalize_options(options),
                "multi_select": multi_select,
                "chat_id": chat_id,
            },
        )
        logger.info(
            "Selection request created",
            request_id=record.request_id,
            multi_select=multi_select,
            chat_id=chat_id,
        )
        return record  # type: ignore[return-value]

    def attach_message(
        self, request_id: str, message_id: int
    ) -> SelectionRequest | None:
        """質問メッセージのIDを記録する."""
        return self._store.update(  # type: ignore[return-value]
            RecordKind.SELECTION, request_id, {"message_id": message_id}
        )

    def get(self, request_id: str) -> SelectionRequest | None:
        """質問を取得する."""
        return self._store.get(RecordKind.SELECTION, request_id)  # type: ignore[return-value]

    def delete(self, request_id: str) -> None:
        """質問を削除する."""
        self._store.delete(RecordKind.SELECTION, request_id)

    def list_all(self) -> list[SelectionRequest]:
        """全ての質問を返す."""
        return self._store.list_all(RecordKind.SELECTION)  # type: ignore[return-value]

    def _transition(self, request_id: str, decide: Any) -> TransitionResult:
        return apply_transition(self._store, RecordKind.SELECTION, request_id, decide)

    def select(self, request_id: str, index: int) -> TransitionResult:
        """
        単一選択の回答を確定する.

        Args:
            request_id: リクエストID
            index: 選択された選択肢の index

        Returns:
            遷移結果
        """

        def decide(record: SelectionRequest) -> Changes:
            rejected = _guard_pending(record)
            if rejected is not None:
                return None, rejected
            if record.multi_select:
                return None, SINGLE_SELECT_ONLY_NOTICE
            option = record.option_by_index(index)
            if option is None:
                return None, INVALID_OPTION_NOTICE
            return (
                {"status": SelectionStatus.ANSWERED, "selected_indices": [index]},
                f"Selected: {option.label}",
            )

        result = self._transition(request_id, decide)
        if result.applied:
            logger.info("Selection answered", request_id=request_id, index=index)
        return result

    def toggle(self, request_id: str, index: int) -> TransitionResult:
        """
        複数選択の選択肢をオン/オフする.

        選択順を保ったまま selected_indices に追加または削除し、状態は pending のまま.

        Args:
            request_id: リクエストID
            index: 選択肢の index

        Returns:
            遷移結果
        """

        def decide(record: SelectionRequest) -> Changes:
            rejected = _guard_pending(record)
            if rejected is not None:
                return None, rejected
            if not record.multi_select:
                return None, MULTI_SELECT_ONLY_NOTICE
            option = record.option_by_index(index)
            if option is None:
                return None, INVALID_OPTION_NOTICE
            if index in record.selected_indices:
                selected = [i for i in record.selected_indices if i != index]
                return {"selected_indices": selected}, f"Removed: {option.label}"
            selected = [*record.selected_indices, index]
            return {"selected_indices": selected}, f"Added: {option.label}"

        return self._transition(request_id, decide)

    def submit(self, request_id: str) -> TransitionResult:
        """
        複数選択の回答を確定する（1つ以上選択されている場合のみ）.

        Args:
            request_id: リクエストID

        Returns:
            遷移結果
        """

        def decide(record: SelectionRequest) -> Changes:
            rejected = _guard_pending(record)
            if rejected is not None:
                return None, rejected
            if not record.multi_select:
                return None, MULTI_SELECT_ONLY_NOTICE
            if not record.selected_indices:
                return None, EMPTY_SUBMIT_NOTICE
            count = len(record.selected_indices)
            return {"status": SelectionStatus.ANSWERED}, f"Submitted {count} selected"

        result = self._transition(request_id, decide)
        if result.applied:
            logger.info("Selection submitted", request_id=request_id)
        return result

    def find_awaiting_input(self, chat_id: int) -> SelectionRequest | None:
        """
        チャットで自由入力を待っている質問を探す.

        Args:
            chat_id: チャットID

        Returns:
            awaiting_input の質問。なければNone
        """
        for record in self.list_all():
            if (
                record.chat_id == chat_id
                and record.status is SelectionStatus.AWAITING_INPUT
            ):
                return record
        return None

    def request_custom_input(self, request_id: str) -> TransitionResult:
        """
        自由入力待ちに切り替える.

        同じチャットで既に自由入力を待っている質問がある場合は拒否する.

        Args:
            request_id: リクエストID

        Returns:
            遷移結果
        """

        def decide(record: SelectionRequest) -> Changes:
            rejected = _guard_pending(record)
            if rejected is not None:
                return None, rejected
            waiting = self.find_awaiting_input(record.chat_id)
            if waiting is not None and waiting.request_id != record.request_id:
                return None, INPUT_BUSY_NOTICE
            return {"status": SelectionStatus.AWAITING_INPUT}, "Type your answer"

        return self._transition(request_id, decide)

    def cancel(self, request_id: str) -> TransitionResult:
        """
        質問をキャンセルする（pending / awaiting_input から）.

        Args:
            request_id: リクエストID

        Returns:
            遷移結果
        """

        def decide(record: SelectionRequest) -> Changes:
            if record.status.is_terminal:
                return None, already_notice(record)
            return {"status": SelectionStatus.CANCELLED}, "Cancelled"

        result = self._transition(request_id, decide)
        if result.applied:
            logger.info("Selection cancelled", request_id=request_id)
        return result

    def submit_custom_input(self, chat_id: int, text: str) -> TransitionResult:
        """
        自由入力待ちの質問に回答テキストを設定して確定する.

        Args:
            chat_id: メッセージを受け取ったチャットID
            text: 回答テキスト

        Returns:
            遷移結果
        """
        waiting = self.find_awaiting_input(chat_id)
        if waiting is None:
            return TransitionResult(applied=False, record=None, notice=NO_AWAITING_NOTICE)

        def decide(record: SelectionRequest) -> Changes:
            if record.status is not SelectionStatus.AWAITING_INPUT:
                return None, already_notice(record)
            return (
                {"status": SelectionStatus.ANSWERED, "custom_input": text},
                "Answer received",
            )

        result = self._transition(waiting.request_id, decide)
        if result.applied:
            logger.info(
                "Selection answered with custom input",
                request_id=waiting.request_id,
                chat_id=chat_id,
            )
        return result

    def expire(self, request_id: str) -> TransitionResult:
        """未解決の質問を expired にする."""
        return expire(self._store, RecordKind.SELECTION, request_id)
