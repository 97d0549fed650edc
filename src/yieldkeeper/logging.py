"""Structured logging setup with rebalance-cycle context support.

Two output formats are supported, controlled by ``settings.log_format``
(env ``YIELDKEEPER_LOG_FORMAT``):

- ``text`` (default): human-readable console output for local runs.
  Format: ``2024-01-01 12:00:00 | INFO     | yieldkeeper.worker
           [cycle=3f2a1b9c] [strat=usdc-main-vault] | message``

- ``json``: one JSON object per line for log aggregators. Fields:
  ``timestamp``, ``level``, ``logger``, ``message``, ``cycle_id``,
  ``strategy_id``, ``service`` and (on exceptions) ``exc_type``,
  ``exc_value``, ``exc_trace``.

Context propagation:
  ``cycle_id_var`` and ``strategy_var`` are ContextVars, so they follow the
  worker's coroutine across awaits. Set them with ``set_rebalance_context()``
  at the start of a cycle and clear them with ``clear_rebalance_context()``.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from yieldkeeper.config import RebalancerSettings

cycle_id_var: ContextVar[str | None] = ContextVar("cycle_id", default=None)
strategy_var: ContextVar[str | None] = ContextVar("strategy_id", default=None)

_SERVICE_NAME = "yieldkeeper"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class RebalanceContextFilter(logging.Filter):
    """Inject ``cycle_id`` and ``strategy_id`` into every log record.

    Both fields are empty strings when unset so that aggregators can filter
    with ``cycle_id != ""``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = cycle_id_var.get() or ""
        record.strategy_id = strategy_var.get() or ""
        return True


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Non-serialisable values (``Decimal``, enums) are coerced with
    ``default=str``. Amounts logged through ``extra=`` are copied into the
    payload under their own keys.
    """

    _RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {
        "message",
        "asctime",
        "cycle_id",
        "strategy_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat()

        payload: dict[str, Any] = {
            "timestamp": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "cycle_id": getattr(record, "cycle_id", ""),
            "strategy_id": getattr(record, "strategy_id", ""),
            "service": _SERVICE_NAME,
        }

        for key, value in vars(record).items():
            if key not in self._RESERVED and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exc_type"] = exc_type.__name__ if exc_type else None
            payload["exc_value"] = str(exc_value)
            payload["exc_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        return json.dumps(payload, default=str)


class _RebalanceTextFormatter(logging.Formatter):
    """Human-readable formatter that appends cycle context only when set."""

    _BASE_FMT = "%(asctime)s | %(levelname)-8s | %(name)s"
    _DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self._BASE_FMT, datefmt=self._DATE_FMT)

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        tokens: list[str] = []
        cycle = getattr(record, "cycle_id", "")
        strat = getattr(record, "strategy_id", "")
        if cycle:
            tokens.append(f"[cycle={cycle}]")
        if strat:
            tokens.append(f"[strat={strat}]")

        context_part = (" " + " ".join(tokens)) if tokens else ""
        line = f"{base}{context_part} | {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------------
# Public setup function
# ---------------------------------------------------------------------------

def setup_logging(settings: "RebalancerSettings | None" = None) -> None:
    """Configure root logging from ``settings.log_level`` / ``settings.log_format``.

    Call once at process startup. Calling again only updates the level.
    """
    log_level_str = settings.log_level.upper() if settings else "INFO"
    log_format = settings.log_format.lower() if settings else "text"
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(log_level)
        return

    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(RebalanceContextFilter())

    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(_RebalanceTextFormatter())

    root_logger.addHandler(console_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialised (level=%s, format=%s)", log_level_str, log_format
    )


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------

def new_cycle_id() -> str:
    """Generate a short id for one rebalance cycle."""
    return uuid.uuid4().hex[:8]


def set_rebalance_context(
    cycle_id: str | None = None,
    strategy_id: str | None = None,
) -> None:
    """Bind rebalance context into the current async context.

    Only the explicitly passed arguments are updated.
    """
    if cycle_id is not None:
        cycle_id_var.set(cycle_id)
    if strategy_id is not None:
        strategy_var.set(strategy_id)


def clear_rebalance_context() -> None:
    """Clear cycle and strategy context; call from a ``finally`` block."""
    cycle_id_var.set(None)
    strategy_var.set(None)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

def get_logger(name: str) -> logging.Logger:
    """Return a standard ``logging.Logger`` for the given module name."""
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    context: dict[str, Any] | None = None,
) -> None:
    """Log an exception at ERROR with optional structured context."""
    context_str = f" | context={context}" if context else ""
    logger.error("Exception: %s%s", exc, context_str, exc_info=True)
