from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "mnist_serving"
_EVT_PREFIX: Final[str] = "EVT "

FieldValue = int | float | bool | str


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = request_id_var.get()
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        if rid:
            payload["request_id"] = rid
        # Lift structured fields encoded by log_event
        extra = _parse_evt_fields(msg)
        if extra:
            payload["message"] = str(extra.pop("event", "event"))
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals."""

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _FG_GRAY = "\x1b[90m"
    _FG_RED = "\x1b[91m"
    _FG_GREEN = "\x1b[92m"
    _FG_YELLOW = "\x1b[93m"
    _FG_BLUE = "\x1b[94m"
    _FG_MAGENTA = "\x1b[95m"
    _FG_CYAN = "\x1b[36m"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._FG_GRAY}{record.name}{self._RESET}")

        msg = record.getMessage()
        extra = _parse_evt_fields(msg)
        if extra:
            event = str(extra.pop("event", "event"))
            parts.append(f"{self._BOLD}{self._FG_BLUE}{event}{self._RESET}")
            for k, v in extra.items():
                parts.append(f"{self._FG_CYAN}{k}{self._RESET}={self._color_value(k, v)}")
        else:
            parts.append(msg)

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._FG_GRAY}rid={rid}{self._RESET}")
        if record.exc_info:
            parts.append(f"\n{self._FG_RED}{self.formatException(record.exc_info)}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        if level >= logging.ERROR:
            c, name = self._FG_RED, "ERROR"
        elif level >= logging.WARNING:
            c, name = self._FG_YELLOW, "WARN"
        elif level >= logging.INFO:
            c, name = self._FG_CYAN, "INFO"
        else:
            c, name = self._FG_GRAY, "DEBUG"
        return f"{self._BOLD}{c}[{name}]{self._RESET}"

    def _color_value(self, key: str, v: object) -> str:
        if key.endswith("_ms") or key.endswith("_s"):
            return f"{self._FG_MAGENTA}{v}{self._RESET}"
        if isinstance(v, bool):
            return f"{self._FG_CYAN}{'true' if v else 'false'}{self._RESET}"
        if isinstance(v, int | float):
            return f"{self._FG_GREEN}{v}{self._RESET}"
        return str(v)


def log_event(
    event: str, fields: Mapping[str, FieldValue] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit a structured event line (``EVT event=<name> k=v ...``)."""
    parts: list[str] = [f"event={event}"]
    for key, val in (fields or {}).items():
        if isinstance(val, bool):
            parts.append(f"{key}={'true' if val else 'false'}")
        elif isinstance(val, int | float):
            parts.append(f"{key}={val}")
        else:
            # Values must stay a single token
            parts.append(f"{key}={str(val).replace(' ', '_')}")
    get_logger().log(level, _EVT_PREFIX + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if not sep or not key:
            continue
        out[key] = _coerce(raw) if key != "event" else raw
    return out


def _coerce(raw: str) -> object:
    if raw in {"true", "false"}:
        return raw == "true"
    if raw.lstrip("-").isdigit():
        return int(raw)
    if _is_float_str(raw.lstrip("-")):
        return float(raw)
    return raw


def _is_float_str(s: str) -> bool:
    if not s:
        return False
    return s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("MNIST_SERVING_LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds the single StreamHandler to the current ``sys.stdout`` so repeated
    calls (one per app instance, pytest capture) never duplicate output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("MNIST_SERVING_LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("MNIST_SERVING_LOG_JSON")
    force_pretty = _env_truthy("MNIST_SERVING_LOG_PRETTY")
    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
