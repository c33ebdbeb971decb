"""Structured logging shared by the gateway and hook processes."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

LATEST_LOG = "latest.log"
ERROR_LOG = "error.log"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# 出力が多すぎるライブラリのロガー
_NOISY_LOGGERS = ("httpx", "httpcore")


def _add_process_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    # 複数の Hook プロセスが同じログファイルに書き込むため、PIDで区別する
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def _resolve_level(log_level: str) -> int:
    level = _LEVELS.get(log_level.upper())
    if level is None:
        print(
            f"Warning: Invalid log level '{log_level}', defaulting to INFO",
            file=sys.stderr,
        )
        return logging.INFO
    return level


def _daily_file_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    backup_count: int,
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_count, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str | Path = "logs",
    log_backup_count: int = 7,
) -> None:
    """
    構造化ロギングを設定する.

    出力先:
    - stderr: ERROR以上
    - <log_dir>/latest.log: log_level以上
    - <log_dir>/error.log: WARNING以上

    Hook プロセスは stdout に結果の JSON を書くため、コンソールには stderr のみを使う.
    ログディレクトリを作成できない場合は stderr のみに出力する.

    Args:
        log_level: latest.log に出力する最低ログレベル
        log_dir: ログ出力ディレクトリ
        log_backup_count: ローテーションしたログの保持日数
    """
    level = _resolve_level(log_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_process_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)
    root_logger.addHandler(stderr_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root_logger.addHandler(
        _daily_file_handler(log_path / LATEST_LOG, level, formatter, log_backup_count)
    )
    root_logger.addHandler(
        _daily_file_handler(
            log_path / ERROR_LOG, logging.WARNING, formatter, log_backup_count
        )
    )


def bind_process_context(**values: Any) -> None:
    """
    以降のログイベント全てに付与する値を設定する（例: process="permission-hook"）.

    Args:
        **values: 付与するキーと値
    """
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
