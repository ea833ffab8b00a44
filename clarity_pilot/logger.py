"""Loguru sinks for Clarity-Pilot.

Two sinks are installed by ``configure_logging``:
- stderr, colourised, one line per event with the operation id when bound;
  stdout is reserved for the JSON result printed by the CLI
- a daily JSON-lines file under ``log_dir`` (rotated, retained, gzipped)

Credential-like context values (passwords, phone numbers, cookies) are
masked before they reach the file.
"""

import json
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from config.settings import GlobalConfig, get_config
from clarity_pilot.exceptions import LoggingInitializationError

# Context keys whose values never reach the log files.
_REDACTED_KEYS = ("password", "phone", "cookie", "token")

# Bound by get_logger/get_operation_logger; promoted to top-level JSON fields.
_PROMOTED_KEYS = ("module", "operation", "operation_id")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{extra[module]}</cyan>"
    "{extra[op_suffix]} "
    "<level>{message}</level>"
)


def _redact(context: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-like values in bound log context."""
    return {
        key: "***" if any(marker in key.lower() for marker in _REDACTED_KEYS) else value
        for key, value in context.items()
    }


def _to_json_line(record: dict[str, Any]) -> str:
    """Render one loguru record as a single JSON line."""
    extra = {k: v for k, v in record["extra"].items() if k not in ("json_line", "op_suffix")}
    entry: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "event": record["message"],
        "where": f'{record["name"]}:{record["function"]}:{record["line"]}',
    }
    for key in _PROMOTED_KEYS:
        if key in extra:
            entry[key] = extra.pop(key)

    error = record["exception"]
    if error is not None and error.type is not None:
        entry["error"] = {"type": error.type.__name__, "value": str(error.value)}

    if extra:
        entry["context"] = _redact(extra)

    return json.dumps(entry, default=str) + "\n"


def _prepare_console(record: dict[str, Any]) -> bool:
    extra = record["extra"]
    extra.setdefault("module", record["name"])
    operation_id = extra.get("operation_id")
    extra["op_suffix"] = f" [{extra.get('operation')}#{operation_id}]" if operation_id else ""
    return True


def _prepare_file(record: dict[str, Any]) -> bool:
    record["extra"]["json_line"] = _to_json_line(record)
    return True


def _ensure_writable(log_dir: Path) -> None:
    """Create ``log_dir`` and prove a file can be written there.

    Raises:
        LoggingInitializationError: If the directory is unusable.
    """
    probe = log_dir / f".probe-{uuid.uuid4().hex[:6]}"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError as exc:
        raise LoggingInitializationError(log_dir=str(log_dir), reason=str(exc)) from exc


def configure_logging(config: GlobalConfig | None = None) -> None:
    """Replace loguru's default handler with the console and JSON file sinks.

    Call once per process, before the first operation runs.

    Raises:
        LoggingInitializationError: If the log directory is not writable.
    """
    config = config or get_config()

    logger.remove()
    _ensure_writable(config.log_dir)

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=config.log_level,
        filter=_prepare_console,
        colorize=True,
        backtrace=config.debug,
        diagnose=config.debug,
    )
    logger.add(
        str(config.log_dir / "clarity_pilot_{time:YYYY-MM-DD}.json"),
        format="{extra[json_line]}",
        level=config.log_level,
        filter=_prepare_file,
        rotation=config.log_rotation,
        retention=config.log_retention,
        compression="gz",
    )

    logger.bind(module=__name__).debug(
        "Logging configured",
        environment=config.environment,
        level=config.log_level,
        log_dir=str(config.log_dir),
    )


def get_logger(name: str) -> "logger":
    """Module logger; pass context as keyword arguments.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("Search complete", query="seo", results=7)
    """
    return logger.bind(module=name)


def get_operation_logger(name: str, operation: str) -> "logger":
    """Logger bound with an operation name and a short correlation id.

    Every line emitted while serving one CLI operation (search, fill,
    submit, ...) carries the same ``operation_id``, so a booking attempt
    can be reconstructed from the JSON log file.
    """
    return logger.bind(module=name, operation=operation, operation_id=uuid.uuid4().hex[:8])
