"""Telegram Bot API client."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Self

import httpx

from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.telegram_models import Message, Update

if TYPE_CHECKING:
    from types import TracebackType

    from telegram_hook_bridge.infrastructure.config import Config
    from telegram_hook_bridge.infrastructure.telegram_models import (
        InlineKeyboardMarkup,
    )

logger = get_logger(__name__)

PARSE_MODE = "MarkdownV2"

# リトライしても結果が変わらないステータス
_NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404})

# 同一内容で編集した場合のエラー（成功として扱う）
_NOT_MODIFIED = "message is not modified"


class TelegramAPIError(Exception):
    """Telegram Bot API 呼び出しの失敗."""

    def __init__(
        self, method: str, description: str, status_code: int | None = None
    ) -> None:
        """
        Initialize TelegramAPIError.

        Args:
            method: 呼び出したAPIメソッド名
            description: エラー内容
            status_code: HTTPステータスコード（通信エラーの場合はNone）
        """
        super().__init__(f"Telegram API {method} failed: {description}")
        self.method = method
        self.description = description
        self.status_code = status_code


class _RetryableError(Exception):
    def __init__(self, error: TelegramAPIError, retry_after: float | None) -> None:
        super().__init__(str(error))
        self.error = error
        self.retry_after = retry_after


class TelegramClient:
    """httpx を使った Telegram Bot API のリトライ付きクライアント."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize TelegramClient.

        Args:
            token: Bot Token
            api_base: Bot API のベースURL
            max_retries: 最大試行回数
            retry_delay: リトライ間隔の基準秒数（試行回数に比例して延ばす）
            timeout: 通常リクエストのタイムアウト秒数
            transport: テスト用のトランスポート
        """
        if not token:
            msg = "Telegram bot token is required"
            raise ValueError(msg)
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=f"{api_base.rstrip('/')}/bot{token}/",
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> TelegramClient:
        """設定からクライアントを生成する."""
        return cls(
            config.telegram_bot_token,
            api_base=config.telegram_api_base,
            max_retries=config.telegram_max_retries,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """HTTPクライアントを閉じる."""
        await self._client.aclose()

    async def _request_once(
        self, method: str, payload: dict[str, Any], timeout: float
    ) -> Any:
        try:
            response = await self._client.post(method, json=payload, timeout=timeout)
        except httpx.HTTPError as e:
            raise _RetryableError(
                TelegramAPIError(method, f"{type(e).__name__}: {e}"), None
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_success and body.get("ok"):
            return body.get("result")

        description = str(
            body.get("description") or response.text[:200] or response.reason_phrase
        )
        error = TelegramAPIError(method, description, response.status_code)

        if response.status_code == 429:
            retry_after: float | None = None
            parameters = body.get("parameters")
            if isinstance(parameters, dict) and "retry_after" in parameters:
                retry_after = float(parameters["retry_after"])
            elif "Retry-After" in response.headers:
                try:
                    retry_after = float(response.headers["Retry-After"])
                except ValueError:
                    retry_after = None
            raise _RetryableError(error, retry_after)

        if response.status_code in _NON_RETRYABLE_STATUSES or response.is_success:
            raise error
        raise _RetryableError(error, None)

    async def call(
        self,
        method: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Any:
        """
        Bot API メソッドを呼び出す.

        通信エラー・5xx・429 はリトライし、429 では Retry-After に従う.
        400/401/403/404 はリトライしない.

        Args:
            method: APIメソッド名（例: sendMessage）
            payload: リクエストボディ
            timeout: このリクエストのタイムアウト秒数

        Returns:
            レスポンスの result フィールド

        Raises:
            TelegramAPIError: 呼び出しが失敗した場合
        """
        request_timeout = timeout if timeout is not None else self._timeout
        for attempt in range(1, self._max_retries + 1):
            try:
                return await self._request_once(method, payload, request_timeout)
            except _RetryableError as e:
                if attempt >= self._max_retries:
                    raise e.error from None
                delay = (
                    e.retry_after
                    if e.retry_after is not None
                    else self._retry_delay * attempt
                )
                logger.warning(
                    "Telegram API call failed, retrying",
                    method=method,
                    attempt=attempt,
                    delay=delay,
                    error=e.error.description,
                )
                await asyncio.sleep(delay)

        raise TelegramAPIError(method, "no attempts were made")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
        parse_mode: str | None = PARSE_MODE,
    ) -> Message:
        """
        メッセージを送信する.

        Args:
            chat_id: 送信先チャットID
            text: 本文
            reply_markup: インラインキーボード
            parse_mode: 書式モード（None でプレーンテキスト）

        Returns:
            送信されたメッセージ
        """
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup.to_payload()
        result = await self.call("sendMessage", payload)
        return Message.model_validate(result)

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        reply_markup: InlineKeyboardMarkup | None = None,
        parse_mode: str | None = PARSE_MODE,
    ) -> None:
        """
        メッセージ本文（とキーボード）を書き換える.

        reply_markup を省略するとボタンは取り除かれる.
        内容が変わらない編集は成功として扱う.

        Args:
            chat_id: チャットID
            message_id: メッセージID
            text: 新しい本文
            reply_markup: 新しいインラインキーボード
            parse_mode: 書式モード
        """
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup.to_payload()
        try:
            await self.call("editMessageText", payload)
        except TelegramAPIError as e:
            if _NOT_MODIFIED in e.description:
                logger.debug("Message not modified", message_id=message_id)
                return
            raise

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        *,
        show_alert: bool = False,
    ) -> None:
        """
        ボタン押下に応答する（クライアント側のローディング表示を止める）.

        Args:
            callback_query_id: CallbackQuery の ID
            text: 表示する通知文
            show_alert: アラートとして表示するかどうか
        """
        payload: dict[str, Any] = {
            "callback_query_id": callback_query_id,
            "show_alert": show_alert,
        }
        if text:
            payload["text"] = text
        await self.call("answerCallbackQuery", payload)

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
    ) -> list[Update]:
        """
        ロングポーリングで更新を取得する.

        Args:
            offset: 次に受け取る update_id
            timeout: ロングポーリングの秒数

        Returns:
            更新のリスト（解釈できない更新はスキップする）
        """
        payload: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        result = await self.call(
            "getUpdates", payload, timeout=timeout + self._timeout
        )

        updates: list[Update] = []
        for item in result or []:
            try:
                updates.append(Update.model_validate(item))
            except ValueError:
                logger.warning("Skipping malformed update", update=item)
        return updates
