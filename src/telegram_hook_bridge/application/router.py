"""Routing of inline-button callbacks and typed answers to the state machines."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from telegram_hook_bridge.application.models import (
    CallbackAction,
    CallbackData,
    PermissionDecision,
    PermissionRequest,
    RecordKind,
    TransitionResult,
)
from telegram_hook_bridge.application.selection import INVALID_OPTION_NOTICE
from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.telegram_client import TelegramAPIError
from telegram_hook_bridge.presentation.views.permission import render_permission
from telegram_hook_bridge.presentation.views.selection import render_selection

if TYPE_CHECKING:
    from collections.abc import Collection

    from telegram_hook_bridge.application.models import Record
    from telegram_hook_bridge.application.permission import PermissionService
    from telegram_hook_bridge.application.selection import SelectionService
    from telegram_hook_bridge.infrastructure.telegram_models import (
        CallbackQuery,
        InlineKeyboardMarkup,
        Message,
    )

logger = get_logger(__name__)

UNAUTHORIZED_NOTICE = "Unauthorized"
ERROR_NOTICE = "Something went wrong, please try again"


class ChatClient(Protocol):
    """Router が使うチャットAPIの操作."""

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        *,
        show_alert: bool = False,
    ) -> None: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> None: ...


def encode_callback_data(
    action: CallbackAction, request_id: str, option_index: int | None = None
) -> str:
    """callback_data 文字列を生成する."""
    return CallbackData(action, request_id, option_index).encode()


def parse_callback_data(data: str | None) -> CallbackData | None:
    """callback_data 文字列を解釈する（形式違反はNone）."""
    return CallbackData.parse(data)


def render_record(record: Record) -> tuple[str, InlineKeyboardMarkup | None]:
    """レコードの現在の状態に応じたメッセージ本文とキーボード."""
    if isinstance(record, PermissionRequest):
        return render_permission(record)
    return render_selection(record)


class CallbackRouter:
    """インラインボタンと自由入力を状態遷移に変換する.

    ボタン押下への応答（answerCallbackQuery）は解釈できた callback に対して
    必ず1回だけ行う。遷移が適用された場合は元のメッセージを再描画する.
    """

    def __init__(
        self,
        permissions: PermissionService,
        selections: SelectionService,
        client: ChatClient,
        allowed_users: Collection[int] = (),
    ) -> None:
        """
        Initialize CallbackRouter.

        Args:
            permissions: 承認要求サービス
            selections: 選択肢質問サービス
            client: チャットAPIクライアント
            allowed_users: 操作を許可するユーザーID（空の場合は全員許可）
        """
        self._permissions = permissions
        self._selections = selections
        self._client = client
        self._allowed_users = frozenset(allowed_users)

    @property
    def permissions(self) -> PermissionService:
        """承認要求サービス."""
        return self._permissions

    @property
    def selections(self) -> SelectionService:
        """選択肢質問サービス."""
        return self._selections

    def is_allowed(self, user_id: int) -> bool:
        """ユーザーが操作を許可されているかどうか."""
        return not self._allowed_users or user_id in self._allowed_users

    async def route(self, callback: CallbackQuery) -> bool:
        """
        ボタン押下を処理する.

        Args:
            callback: CallbackQuery

        Returns:
            処理した場合True。解釈できない callback_data の場合は応答せずFalse
        """
        data = parse_callback_data(callback.data)
        if data is None:
            logger.debug("Unrecognized callback data", data=callback.data)
            return False

        user = callback.from_user
        if not self.is_allowed(user.id):
            logger.warning(
                "Unauthorized callback",
                user_id=user.id,
                action=data.action.value,
                request_id=data.request_id,
            )
            await self._answer(callback.id, UNAUTHORIZED_NOTICE, show_alert=True)
            return True

        try:
            result = self._dispatch(data, user.display_name)
        except Exception:
            logger.exception(
                "Error handling callback",
                action=data.action.value,
                request_id=data.request_id,
            )
            await self._answer(callback.id, ERROR_NOTICE)
            return True

        logger.info(
            "Callback handled",
            action=data.action.value,
            request_id=data.request_id,
            applied=result.applied,
            notice=result.notice,
        )
        await self._answer(callback.id, result.notice)

        if result.applied and result.record is not None:
            await self._rerender(result.record, callback.message)
        return True

    def _dispatch(self, data: CallbackData, actor: str) -> TransitionResult:
        action = data.action
        request_id = data.request_id

        if action is CallbackAction.APPROVE:
            return self._permissions.resolve(request_id, PermissionDecision.APPROVE, actor)
        if action is CallbackAction.DENY:
            return self._permissions.resolve(request_id, PermissionDecision.DENY, actor)
        if action.takes_option:
            if data.option_index is None:
                return TransitionResult(
                    applied=False, record=None, notice=INVALID_OPTION_NOTICE
                )
            if action is CallbackAction.SELECT:
                return self._selections.select(request_id, data.option_index)
            return self._selections.toggle(request_id, data.option_index)
        if action is CallbackAction.SUBMIT:
            return self._selections.submit(request_id)
        if action is CallbackAction.CUSTOM:
            return self._selections.request_custom_input(request_id)
        return self._selections.cancel(request_id)

    async def route_message(self, message: Message) -> bool:
        """
        自由入力待ちの質問があるチャットで、メッセージを回答として扱う.

        Args:
            message: 受信したメッセージ

        Returns:
            回答として消費した場合True
        """
        if not message.text or message.from_user is None:
            return False
        if not self.is_allowed(message.from_user.id):
            return False

        result = self._selections.submit_custom_input(message.chat.id, message.text)
        if not result.applied or result.record is None:
            return False

        await self._rerender(result.record, None)
        return True

    async def refresh_message(self, record: Record) -> None:
        """レコードの現在の状態でメッセージを描画し直す（失敗はログのみ）."""
        await self._rerender(record, None)

    async def _answer(
        self, callback_id: str, text: str, *, show_alert: bool = False
    ) -> None:
        try:
            await self._client.answer_callback_query(
                callback_id, text, show_alert=show_alert
            )
        except TelegramAPIError as e:
            logger.warning(
                "Failed to answer callback", callback_id=callback_id, error=str(e)
            )

    async def _rerender(self, record: Record, message: Message | None) -> None:
        chat_id = record.chat_id
        message_id = record.message_id
        if message_id is None and message is not None:
            chat_id = message.chat.id
            message_id = message.message_id
        if message_id is None:
            logger.debug("No message to update", request_id=record.request_id)
            return

        text, keyboard = render_record(record)
        try:
            await self._client.edit_message_text(
                chat_id, message_id, text, reply_markup=keyboard
            )
        except TelegramAPIError as e:
            kind = (
                RecordKind.PERMISSION
                if isinstance(record, PermissionRequest)
                else RecordKind.SELECTION
            )
            logger.warning(
                "Failed to update message",
                kind=kind.value,
                request_id=record.request_id,
                error=str(e),
            )
