"""Hook process flows: ask over Telegram, wait for the answer, map it to a hook result."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from telegram_hook_bridge.application.models import OutcomeStatus, RecordKind
from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.rules import PermissionRules, RuleAction
from telegram_hook_bridge.application.selection import SelectionService
from telegram_hook_bridge.application.waiter import Waiter
from telegram_hook_bridge.infrastructure.chat_registry import ChatRegistry
from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.store import RecordStore
from telegram_hook_bridge.infrastructure.telegram_client import (
    TelegramAPIError,
    TelegramClient,
)
from telegram_hook_bridge.presentation.views.permission import (
    render_permission,
    render_permission_timeout,
)
from telegram_hook_bridge.presentation.views.selection import (
    render_selection,
    render_selection_timeout,
)

if TYPE_CHECKING:
    from telegram_hook_bridge.application.models import (
        Record,
        SelectionRequest,
    )
    from telegram_hook_bridge.infrastructure.config import Config
    from telegram_hook_bridge.infrastructure.telegram_models import (
        InlineKeyboardMarkup,
        Message,
    )

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKED = 2


class HookInputError(Exception):
    """Hook の標準入力を解釈できない場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize HookInputError.

        Args:
            message: エラー内容
        """
        super().__init__(message)
        self.message = message


class HookClient(Protocol):
    """Hook が使うチャットAPIの操作."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> Message: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class HookResult:
    """Hook プロセスの結果（標準出力のJSONと終了コード）."""

    exit_code: int
    output: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """標準出力に書き出すJSON."""
        return json.dumps(self.output, ensure_ascii=False)


@dataclass
class HookContext:
    """Hook の実行に必要な依存関係."""

    store: RecordStore
    client: HookClient
    chat_id: int | None
    rules: PermissionRules = field(default_factory=PermissionRules)
    permission_timeout_ms: int = 300_000
    selection_timeout_ms: int = 300_000
    poll_interval_ms: int = 500

    @classmethod
    def from_config(cls, config: Config, client: HookClient) -> HookContext:
        """
        設定から依存関係を組み立てる.

        通知先チャットIDは TELEGRAM_CHAT_ID を優先し、未設定なら
        Gateway が記録したチャットIDを使う.

        Args:
            config: 設定
            client: チャットAPIクライアント

        Returns:
            HookContext
        """
        chat_id = config.telegram_chat_id
        if chat_id is None:
            chat_id = ChatRegistry(config.state_dir).get_chat_id()
        return cls(
            store=RecordStore(config.state_dir),
            client=client,
            chat_id=chat_id,
            rules=PermissionRules.load(config.rules_file),
            permission_timeout_ms=config.permission_timeout_ms,
            selection_timeout_ms=config.selection_timeout_ms,
            poll_interval_ms=config.poll_interval_ms,
        )


class Question(BaseModel):
    """Hook 入力の質問1件（AskUserQuestion 形式）."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    question: str
    header: str | None = None
    options: list[dict[str, Any] | str] = Field(default_factory=list)
    multi_select: bool = False


def parse_hook_input(raw: str) -> dict[str, Any]:
    """
    Hook の標準入力を JSON オブジェクトとして解釈する.

    Args:
        raw: 標準入力の内容

    Returns:
        JSON オブジェクト（空入力の場合は空の dict）

    Raises:
        HookInputError: JSON でない、またはオブジェクトでない場合
    """
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON on stdin: {e}"
        raise HookInputError(msg) from e
    if not isinstance(payload, dict):
        msg = "Hook input must be a JSON object"
        raise HookInputError(msg)
    return payload


def parse_questions(payload: dict[str, Any]) -> list[Question]:
    """
    Hook 入力から質問を取り出す.

    tool_input.questions[] と、質問オブジェクト単体の両方を受け付ける.

    Args:
        payload: Hook 入力

    Returns:
        質問のリスト

    Raises:
        HookInputError: 質問が見つからない、または形式が不正な場合
    """
    source = payload.get("tool_input", payload)
    if not isinstance(source, dict):
        msg = "tool_input must be an object"
        raise HookInputError(msg)

    if isinstance(source.get("questions"), list):
        items = source["questions"]
    elif "question" in source:
        items = [source]
    else:
        msg = "No questions found in hook input"
        raise HookInputError(msg)

    if not items:
        msg = "Question list is empty"
        raise HookInputError(msg)

    try:
        return [Question.model_validate(item) for item in items]
    except ValidationError as e:
        msg = f"Invalid question: {e.errors()[0]['msg']}"
        raise HookInputError(msg) from e


async def _send(
    context: HookContext, chat_id: int, record: Record, text: str, keyboard: Any
) -> Message | None:
    try:
        return await context.client.send_message(chat_id, text, reply_markup=keyboard)
    except TelegramAPIError:
        logger.exception("Failed to send request message", request_id=record.request_id)
        return None


async def run_permission_hook(
    payload: dict[str, Any], context: HookContext
) -> HookResult:
    """
    ツール実行の承認を Telegram で求め、結果を Hook の出力に変換する.

    - ルールで allow / deny が決まれば問い合わせない（終了コード 0）
    - 承認: decision=approve（0）
    - 拒否: decision=block（2）
    - タイムアウト: decision=block と理由（0）
    - 送信失敗・チャット未登録: 1

    Args:
        payload: Hook 入力
        context: 依存関係

    Returns:
        Hook の結果
    """
    tool_name = str(payload.get("tool_name") or payload.get("tool") or "Unknown")
    tool_input = payload.get("tool_input") or payload.get("input") or {}
    if not isinstance(tool_input, dict):
        tool_input = {"input": tool_input}

    action = context.rules.evaluate(tool_name, tool_input)
    logger.info("Permission rules evaluated", tool_name=tool_name, action=action.value)
    if action is RuleAction.ALLOW:
        return HookResult(EXIT_OK, {"decision": "approve", "reason": "Matched allow rule"})
    if action is RuleAction.DENY:
        return HookResult(EXIT_OK, {"decision": "block", "reason": "Matched deny rule"})

    chat_id = context.chat_id
    if chat_id is None:
        logger.error("No chat id available, send a message to the bot first")
        return HookResult(
            EXIT_ERROR, {"decision": "block", "reason": "No Telegram chat registered"}
        )

    permissions = PermissionService(context.store)
    record = permissions.create_request(tool_name, tool_input, chat_id)
    text, keyboard = render_permission(record)
    message = await _send(context, chat_id, record, text, keyboard)
    if message is None:
        permissions.delete(record.request_id)
        return HookResult(
            EXIT_ERROR,
            {"decision": "block", "reason": "Failed to send Telegram message"},
        )
    permissions.attach_message(record.request_id, message.message_id)

    async def notify_timeout(expired: Record) -> None:
        await context.client.edit_message_text(
            chat_id,
            message.message_id,
            render_permission_timeout(expired),  # type: ignore[arg-type]
        )

    outcome = await Waiter(context.store).wait(
        RecordKind.PERMISSION,
        record.request_id,
        timeout_ms=context.permission_timeout_ms,
        poll_interval_ms=context.poll_interval_ms,
        on_timeout=notify_timeout,
    )

    if outcome.status is OutcomeStatus.APPROVED:
        return HookResult(EXIT_OK, {"decision": "approve"})
    if outcome.status is OutcomeStatus.DENIED:
        return HookResult(
            EXIT_BLOCKED, {"decision": "block", "reason": "User denied permission"}
        )
    return HookResult(
        EXIT_OK, {"decision": "block", "reason": "Permission request timed out"}
    )


def _answer_output(record: SelectionRequest | None) -> dict[str, Any]:
    if record is None:
        return {"selectedIndices": [], "selectedLabels": [], "customInput": None}
    return {
        "selectedIndices": list(record.selected_indices),
        "selectedLabels": record.labels_for(record.selected_indices),
        "customInput": record.custom_input,
    }


def _selection_output(
    answers: list[dict[str, Any]], question_count: int, **extra: Any
) -> dict[str, Any]:
    if question_count == 1:
        output = answers[0] if answers else _answer_output(None)
    else:
        output = {"answers": answers}
    output.update(extra)
    return output


async def run_selection_hook(
    payload: dict[str, Any], context: HookContext
) -> HookResult:
    """
    選択肢質問を Telegram で順番に尋ね、回答を Hook の出力に変換する.

    - 全て回答: 0（質問1件なら回答オブジェクト、複数なら {"answers": [...]}）
    - キャンセル: 2
    - タイムアウト: 0（"timedOut": true）
    - 入力不正・送信失敗・チャット未登録: 1

    Args:
        payload: Hook 入力
        context: 依存関係

    Returns:
        Hook の結果
    """
    try:
        questions = parse_questions(payload)
    except HookInputError as e:
        logger.error("Invalid selection hook input", error=e.message)
        return HookResult(EXIT_ERROR, {"error": e.message})

    chat_id = context.chat_id
    if chat_id is None:
        logger.error("No chat id available, send a message to the bot first")
        return HookResult(EXIT_ERROR, {"error": "No Telegram chat registered"})

    selections = SelectionService(context.store)
    waiter = Waiter(context.store)
    answers: list[dict[str, Any]] = []

    for question in questions:
        try:
            record = selections.create_request(
                question.question,
                question.options,
                question.multi_select,
                chat_id,
                header=question.header,
            )
        except ValueError as e:
            logger.error("Invalid question options", error=str(e))
            return HookResult(EXIT_ERROR, {"error": "Invalid question options"})

        text, keyboard = render_selection(record)
        message = await _send(context, chat_id, record, text, keyboard)
        if message is None:
            selections.delete(record.request_id)
            return HookResult(EXIT_ERROR, {"error": "Failed to send Telegram message"})
        selections.attach_message(record.request_id, message.message_id)

        async def notify_timeout(
            expired: Record, message_id: int = message.message_id
        ) -> None:
            await context.client.edit_message_text(
                chat_id,
                message_id,
                render_selection_timeout(expired),  # type: ignore[arg-type]
            )

        outcome = await waiter.wait(
            RecordKind.SELECTION,
            record.request_id,
            timeout_ms=context.selection_timeout_ms,
            poll_interval_ms=context.poll_interval_ms,
            on_timeout=notify_timeout,
        )

        if outcome.status is OutcomeStatus.ANSWERED:
            answers.append(_answer_output(outcome.record))  # type: ignore[arg-type]
            continue
        if outcome.status is OutcomeStatus.CANCELLED:
            return HookResult(
                EXIT_BLOCKED,
                _selection_output(answers, len(questions), cancelled=True),
            )
        return HookResult(
            EXIT_OK,
            _selection_output(answers, len(questions), timedOut=True),
        )

    return HookResult(EXIT_OK, _selection_output(answers, len(questions)))


async def execute_hook(kind: RecordKind, raw_input: str, config: Config) -> HookResult:
    """
    Hook プロセスのエントリポイント（CLI から呼ばれる）.

    Args:
        kind: permission / selection
        raw_input: 標準入力の内容
        config: 設定

    Returns:
        Hook の結果
    """
    try:
        payload = parse_hook_input(raw_input)
    except HookInputError as e:
        logger.error("Failed to parse hook input", error=e.message)
        return _error_result(kind, e.message)

    try:
        async with TelegramClient.from_config(config) as client:
            context = HookContext.from_config(config, client)
            if kind is RecordKind.PERMISSION:
                return await run_permission_hook(payload, context)
            return await run_selection_hook(payload, context)
    except Exception as e:
        logger.exception("Hook failed", kind=kind.value)
        return _error_result(kind, f"Hook failed: {e}")


def _error_result(kind: RecordKind, message: str) -> HookResult:
    if kind is RecordKind.PERMISSION:
        return HookResult(EXIT_ERROR, {"decision": "block", "reason": message})
    return HookResult(EXIT_ERROR, {"error": message})

