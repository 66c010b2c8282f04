"""
auction_ledger.logging
----------------------

Structured logging with:
- JSON or concise colored text formats
- Context-local fields via `contextvars` (trace_id, deployment, auction_id, ...)
- Safe JSON serialization (datetimes, bytes → hex, Paths → str, dataclasses)
- Helpers to bind scoped context fields and generate trace IDs
- Optional JSON file sink

Usage
-----
    from auction_ledger import logging as llog

    llog.configure(json=False, level="INFO")  # once at process start
    log = llog.get_logger(__name__)

    with llog.trace_scope():
        llog.bind(deployment=identity)
        log.info("bid accepted", extra={"auction_id": 7, "amount": 150})

Environment: AUCTION_LEDGER_LOG_FORMAT=(json|text) and AUCTION_LEDGER_LOG_LEVEL.
"""

from __future__ import annotations

import datetime as _dt
import io
import json
import logging
import os
import sys
import threading
import traceback
import types
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

# ----------------------------
# Context
# ----------------------------

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("_LOG_CONTEXT", default={})

DEFAULT_CONTEXT_KEYS = (
    "trace_id",
    "deployment",
    "logic_version",
    "component",
    "auction_id",
)


def context() -> Dict[str, Any]:
    """Return a *copy* of the active logging context."""
    return dict(_LOG_CONTEXT.get())


def bind(**fields: Any) -> None:
    """Merge fields into the active context."""
    cur = dict(_LOG_CONTEXT.get())
    cur.update({k: _coerce_value(v) for k, v in fields.items()})
    _LOG_CONTEXT.set(cur)


@contextmanager
def bound(**fields: Any) -> Iterator[None]:
    """Bind `fields` for the duration of the block, then restore the prior context."""
    prev = dict(_LOG_CONTEXT.get())
    try:
        bind(**fields)
        yield
    finally:
        _LOG_CONTEXT.set(prev)


@contextmanager
def trace_scope(trace_id: Optional[str] = None) -> Iterator[str]:
    """
    Ensure a trace_id is present for the duration of the scope.
    Restores prior context on exit.
    """
    prev = dict(_LOG_CONTEXT.get())
    tid = trace_id or prev.get("trace_id") or short_uuid()
    try:
        bind(trace_id=tid)
        yield tid
    finally:
        _LOG_CONTEXT.set(prev)


def short_uuid() -> str:
    return uuid.uuid4().hex[:12]


# ----------------------------
# JSON & Text formatters
# ----------------------------

_RESERVED = frozenset(
    (
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
    )
)


class _SafeJSONEncoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:  # type: ignore[override]
        return _coerce_value(o)


def _utcnow_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="milliseconds")


_LEVEL_TO_INT = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

ANSI = types.SimpleNamespace(
    RESET="\x1b[0m",
    BOLD="\x1b[1m",
    FG=types.SimpleNamespace(
        RED="\x1b[31m",
        GREEN="\x1b[32m",
        YELLOW="\x1b[33m",
        MAGENTA="\x1b[35m",
        CYAN="\x1b[36m",
        GREY="\x1b[90m",
        WHITE="\x1b[37m",
    ),
)

_LEVEL_COLOR = {
    logging.DEBUG: ANSI.FG.GREY,
    logging.INFO: ANSI.FG.GREEN,
    logging.WARNING: ANSI.FG.YELLOW,
    logging.ERROR: ANSI.FG.RED,
    logging.CRITICAL: ANSI.BOLD + ANSI.FG.MAGENTA,
}


def _supports_color(stream: io.TextIOBase) -> bool:
    try:
        return stream.isatty() and os.environ.get("NO_COLOR") is None
    except (AttributeError, ValueError):
        return False


def _coerce_value(v: Any) -> Any:
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, (list, tuple)):
        return [_coerce_value(x) for x in v]
    if isinstance(v, dict):
        return {str(k): _coerce_value(x) for k, x in v.items()}
    if isinstance(v, (bytes, bytearray)):
        return v.hex()
    if isinstance(v, Path):
        return str(v)
    if isinstance(v, _dt.datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=_dt.timezone.utc)
        return v.isoformat()
    if is_dataclass(v) and not isinstance(v, type):
        return _coerce_value(asdict(v))
    return str(v)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if not k.startswith("_") and k not in _RESERVED}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utcnow_iso(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "pid": os.getpid(),
            "tid": threading.get_ident(),
        }
        payload.update(context())
        for k, v in _extras(record).items():
            payload.setdefault(k, _coerce_value(v))
        if record.exc_info:
            payload["err"] = "".join(traceback.format_exception(*record.exc_info)).rstrip()
        return json.dumps(payload, cls=_SafeJSONEncoder, separators=(",", ":"))


class TextFormatter(logging.Formatter):
    """
    Human-friendly one-liner:
      2026-01-05T12:34:56.789+00:00 | INFO  | auction_ledger.logic.base | trace=abc123 auction_id=7 | bid accepted
    """

    def __init__(self, stream: io.TextIOBase):
        super().__init__()
        self._color = _supports_color(stream)

    def format(self, record: logging.LogRecord) -> str:
        ctx = context()
        ctx_str = " ".join(f"{k}={ctx[k]}" for k in DEFAULT_CONTEXT_KEYS if ctx.get(k) is not None)
        extras = " ".join(
            f"{k}={_coerce_value(v)}" for k, v in _extras(record).items() if k not in ctx
        )
        lvl = f"{record.levelname:<5}"
        name = record.name
        ts = _utcnow_iso()
        if self._color:
            lvl = f"{_LEVEL_COLOR.get(record.levelno, ANSI.FG.WHITE)}{lvl}{ANSI.RESET}"
            name = f"{ANSI.FG.CYAN}{name}{ANSI.RESET}"
            ts = f"{ANSI.FG.GREY}{ts}{ANSI.RESET}"

        line = f"{ts} | {lvl} | {name}"
        if ctx_str:
            line += f" | {ctx_str}"
        if extras:
            line += f" {extras}"
        line += f" | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info)).rstrip()
        return line


# ----------------------------
# Public setup API
# ----------------------------


def configure(
    *,
    json: Optional[bool] = None,
    level: str | int | None = None,
    stream: io.TextIOBase = sys.stderr,
    file_path: Optional[Path | str] = None,
    propagate_existing: bool = False,
) -> None:
    """
    Configure the root logger.

    json: None → decided by AUCTION_LEDGER_LOG_FORMAT, else JSON when not a TTY.
    level: None → AUCTION_LEDGER_LOG_LEVEL, else INFO.
    file_path: optional file that additionally receives JSON lines.
    """
    chosen_json = _decide_json(json, stream)
    lvl = _coerce_level(level if level is not None else os.environ.get("AUCTION_LEDGER_LOG_LEVEL", "INFO"))

    root = logging.getLogger()
    root.setLevel(lvl)
    if not propagate_existing:
        for h in list(root.handlers):
            root.removeHandler(h)

    console = logging.StreamHandler(stream)
    console.setLevel(lvl)
    console.setFormatter(JSONFormatter() if chosen_json else TextFormatter(stream))
    root.addHandler(console)

    if file_path:
        p = Path(file_path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(p, encoding="utf-8")
        fh.setLevel(lvl)
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)


def configure_from_config(cfg: Any, *, stream: io.TextIOBase = sys.stderr) -> None:
    """Configure from `LedgerConfig.logging` (format "auto" defers to env/TTY)."""
    fmt = cfg.logging.format
    configure(
        json=None if fmt == "auto" else fmt == "json",
        level=cfg.logging.level,
        stream=stream,
        file_path=cfg.logging.file,
    )


# ----------------------------
# Internals
# ----------------------------


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return _LEVEL_TO_INT.get(level.upper(), logging.INFO)


def _decide_json(json_flag: Optional[bool], stream: io.TextIOBase) -> bool:
    if json_flag is not None:
        return json_flag
    env = os.environ.get("AUCTION_LEDGER_LOG_FORMAT", "").strip().lower()
    if env in ("json", "text"):
        return env == "json"
    return not _supports_color(stream)


__all__ = [
    "context",
    "bind",
    "bound",
    "trace_scope",
    "short_uuid",
    "JSONFormatter",
    "TextFormatter",
    "configure",
    "configure_from_config",
]
