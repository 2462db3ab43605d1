"""日志初始化：统一 JSON 行格式、队列异步写入与 DEBUG 模块放行。"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from dotchess_env.config import Settings
from dotchess_env.infra.logging.context import CONTEXT_KEYS, get_log_context

_listener: QueueListener | None = None


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}...(truncated)"


def render_payload_preview(payload: Any, *, max_chars: int) -> str | None:
    """将 payload 转为截断后的预览文本，避免写入大段编译输出。

    字典按字段分别截断，stdout / stderr 这类输出流各自保留开头，不会被前一个字段挤掉。
    """
    if payload is None:
        return None
    if isinstance(payload, str):
        return _truncate(payload, max_chars)
    if isinstance(payload, Mapping):
        payload = {
            key: _truncate(value, max_chars) if isinstance(value, str) else value for key, value in payload.items()
        }
        try:
            return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
        except TypeError:
            return str(payload)
    try:
        serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
    except TypeError:
        serialized = str(payload)
    return _truncate(serialized, max_chars)


class DebugRoutingFilter(logging.Filter):
    """控制默认日志级别，并允许指定模块放行 DEBUG。"""

    def __init__(self, *, min_level: int, debug_modules: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = debug_modules

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        return any(
            record.name == item or record.name.startswith(f"{item}.") for item in self._debug_modules
        )


class ContextInjectionFilter(logging.Filter):
    """在日志入队前将 contextvars 写入 record，避免跨线程丢失。"""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_log_context()
        for key in CONTEXT_KEYS:
            if getattr(record, key, None) is None and ctx.get(key) is not None:
                setattr(record, key, ctx[key])
        return True


class StructuredJsonFormatter(logging.Formatter):
    """将 LogRecord 规整为统一 JSON 行格式。"""

    def __init__(self, *, service: str, process_role: str, payload_preview_chars: int) -> None:
        super().__init__()
        self._service = service
        self._process_role = process_role
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)

        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
            "run_id": getattr(record, "run_id", None) or ctx.get("run_id"),
            "stage": getattr(record, "stage", None) or ctx.get("stage"),
            "tool": getattr(record, "tool", None) or ctx.get("tool"),
            "op": getattr(record, "op", None),
            "duration_ms": getattr(record, "duration_ms", None),
            "status_code": getattr(record, "status_code", None),
            "message": record.getMessage(),
            "error_type": getattr(record, "error_type", None),
            "error": str(error_text) if error_text is not None else None,
            "payload_preview": render_payload_preview(
                getattr(record, "payload_preview", None),
                max_chars=self._payload_preview_chars,
            ),
        }
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str) -> int:
    return getattr(logging, str(level_text).upper(), logging.INFO)


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """初始化全局日志输出，写 JSONL 文件并将 ERROR 同步到 stderr。"""
    global _listener
    shutdown_logging()

    role_dir = settings.log_dir / process_role
    role_dir.mkdir(parents=True, exist_ok=True)
    log_file = role_dir / "pipeline.jsonl"

    queue_obj: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {
                "queue": {
                    "class": "logging.handlers.QueueHandler",
                    "queue": queue_obj,
                }
            },
            "root": {
                "level": "DEBUG",
                "handlers": ["queue"],
            },
        }
    )

    root_logger = logging.getLogger()
    queue_handler = next((item for item in root_logger.handlers if isinstance(item, QueueHandler)), None)
    if queue_handler is None:
        raise RuntimeError("queue logging handler is not configured")
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=_parse_level(settings.log_level),
            debug_modules=set(settings.log_debug_modules_list()),
        )
    )

    formatter = StructuredJsonFormatter(
        service=settings.app_name,
        process_role=process_role,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(queue_obj, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """停止队列监听器并关闭底层句柄。"""
    global _listener
    if _listener is None:
        return
    try:
        _listener.stop()
        for handler in _listener.handlers:
            handler.close()
    finally:
        _listener = None
