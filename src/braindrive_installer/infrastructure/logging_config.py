"""
Logging setup.

structlog renders every event twice: to the console (pretty or JSON) and
as JSON lines into a daily-rotated ``installer.log``. A redaction
processor scrubs credentials before anything is rendered, so log exports
can be shared safely.
"""

import json
import logging
import re
from datetime import datetime, timedelta
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

LOG_FILE_NAME = "installer.log"

_REDACTIONS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S), "[REDACTED_PRIVATE_KEY]"),
    (re.compile(r"sk-ant-[A-Za-z0-9_-]+"), "[REDACTED_ANTHROPIC_KEY]"),
    (re.compile(r"sk-[A-Za-z0-9_-]{20,}"), "[REDACTED_OPENAI_KEY]"),
    (re.compile(r"(?i)(authorization\s*[:=]\s*)(\S+(\s+\S+)?)"), r"\1[REDACTED]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer [REDACTED]"),
    (
        re.compile(r"(?i)\b(ANTHROPIC_API_KEY|OPENAI_API_KEY|DATABASE_URL|SECRET_KEY|PRIVATE_KEY)\s*=\s*\S+"),
        r"\1=[REDACTED]",
    ),
    (re.compile(r"(?i)\b(api[_-]?key|secret|token|password|passwd)(\s*[:=]\s*)[\"']?[^\s\"',}]+"), r"\1\2[REDACTED]"),
    (re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)[^\s:/@]+:[^\s@/]+@"), r"\1[REDACTED]@"),
]

_SENSITIVE_KEYS = {"api_key", "token", "password", "secret", "authorization"}


def redact(text: str) -> str:
    """Replace credentials in ``text`` with placeholders."""
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if str(key).lower() in _SENSITIVE_KEYS else _redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact_value(item) for item in value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor scrubbing credentials from every field."""
    return _redact_value(event_dict)


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    json_console: bool = False,
) -> None:
    """
    Configure structlog and the stdlib handlers behind it.

    Args:
        level: Minimum level name
        log_dir: Directory for ``installer.log`` (None = console only)
        json_console: Render console output as JSON instead of pretty text
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    shared = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )

    console = logging.StreamHandler()
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer() if json_console else structlog.dev.ConsoleRenderer(),
            ],
            foreign_pre_chain=shared,
        )
    )
    handlers: list[logging.Handler] = [console]

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_dir / LOG_FILE_NAME, when="midnight", backupCount=7, encoding="utf-8"
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=shared,
            )
        )
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(numeric_level)
    # keep third-party chatter out of the installer log
    for noisy in ("httpx", "httpcore", "websockets", "LiteLLM", "litellm"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))


def _log_files(log_dir: Path) -> list[Path]:
    """Log files newest first."""
    files = [path for path in log_dir.glob(f"{LOG_FILE_NAME}*") if path.is_file()]
    return sorted(files, key=lambda path: path.stat().st_mtime, reverse=True)


def cleanup_old_logs(log_dir: Path, keep_days: int = 7) -> int:
    """Delete log files older than ``keep_days``; returns the number removed."""
    if not log_dir.is_dir():
        return 0
    cutoff = (datetime.now() - timedelta(days=keep_days)).timestamp()
    removed = 0
    for path in log_dir.iterdir():
        is_log = path.name.startswith(LOG_FILE_NAME) or path.suffix == ".log"
        if path.is_file() and is_log and path.stat().st_mtime < cutoff:
            path.unlink()
            removed += 1
    return removed


def export_logs_for_sharing(log_dir: Path, max_lines: int = 1000) -> Path:
    """
    Write a redacted excerpt of the newest logs for support requests.

    Takes up to ``max_lines`` most recent lines from the three newest log
    files, re-applies redaction and writes them to ``exports/``.

    Returns:
        Path of the export file

    Raises:
        FileNotFoundError: No log files exist yet
    """
    files = _log_files(log_dir)[:3]
    if not files:
        raise FileNotFoundError(f"No log files in {log_dir}")

    lines: list[str] = []
    for path in reversed(files):
        lines.extend(path.read_text(encoding="utf-8", errors="replace").splitlines())
    lines = lines[-max_lines:]

    export_dir = log_dir / "exports"
    export_dir.mkdir(parents=True, exist_ok=True)
    export_path = export_dir / f"braindrive_logs_{datetime.now():%Y%m%d_%H%M%S}.txt"
    header = f"# BrainDrive installer logs exported {datetime.now().isoformat()}\n"
    export_path.write_text(header + "\n".join(redact(line) for line in lines) + "\n", encoding="utf-8")
    return export_path


def get_recent_events(log_dir: Path, count: int = 50) -> list[dict[str, Any]]:
    """Most recent structured events from the current log file, oldest first."""
    path = log_dir / LOG_FILE_NAME
    if not path.is_file():
        return []
    events = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines()[-count:]:
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return events
