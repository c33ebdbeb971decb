"""Keystroke injection into the tmux session running the agent."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from telegram_hook_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# tmux コマンド1回あたりのタイムアウト秒数
COMMAND_TIMEOUT = 5.0


@dataclass(frozen=True)
class InjectionResult:
    """注入結果."""

    success: bool
    error: str | None = None


class TmuxInjector:
    """tmux send-keys でテキストを入力する."""

    def __init__(self, session: str, tmux_binary: str = "tmux") -> None:
        """
        Initialize TmuxInjector.

        Args:
            session: tmux セッション名
            tmux_binary: tmux 実行ファイル
        """
        self._session = session
        self._tmux = tmux_binary

    @property
    def session(self) -> str:
        """tmux セッション名."""
        return self._session

    async def _run(self, *args: str) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            self._tmux,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(), timeout=COMMAND_TIMEOUT
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "tmux command timed out"
        return process.returncode or 0, stderr.decode(errors="replace").strip()

    async def session_exists(self) -> bool:
        """セッションが存在するかどうか."""
        try:
            code, _ = await self._run("has-session", "-t", self._session)
        except OSError:
            return False
        return code == 0

    async def inject(self, text: str) -> InjectionResult:
        """
        テキストをリテラル入力し、Enter を送る.

        Args:
            text: 入力するテキスト

        Returns:
            注入結果
        """
        try:
            if not await self.session_exists():
                return InjectionResult(
                    success=False,
                    error=f"tmux session '{self._session}' does not exist",
                )
            code, err = await self._run("send-keys", "-t", self._session, "-l", text)
            if code != 0:
                return InjectionResult(success=False, error=err or "send-keys failed")
            code, err = await self._run("send-keys", "-t", self._session, "Enter")
            if code != 0:
                return InjectionResult(success=False, error=err or "send-keys failed")
        except OSError as e:
            logger.warning("Failed to run tmux", error=str(e))
            return InjectionResult(success=False, error=str(e))

        logger.info("Text injected into tmux", session=self._session, length=len(text))
        return InjectionResult(success=True)
