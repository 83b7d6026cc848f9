"""
Logging setup for fnkernel.

Two outputs, both under ``<data dir>/logs`` (data dir: $FNKERNEL_DATA_DIR,
default ~/.fnkernel):

- ``local-YYYY-MM-DD.log``: the ``fnkernel`` logger hierarchy, once
  setup_fnkernel_logging() has been called
- ``kernel-events-YYYY-MM-DD.log``: one line per kernel event
  (render, dispatch, tool call), always appended
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger(__name__)


def get_data_dir() -> Path:
    return Path(os.environ.get("FNKERNEL_DATA_DIR", "~/.fnkernel")).expanduser()


def get_log_dir() -> Path:
    return get_data_dir() / "logs"


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def setup_fnkernel_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure the ``fnkernel`` logger. Safe to call more than once.

    Args:
        level: Level name (case-insensitive). Unknown names fall back to INFO.
            DEBUG also logs to the console.
        log_dir: Overrides ``<data dir>/logs``.

    Returns:
        The ``fnkernel`` logger.
    """
    root = logging.getLogger("fnkernel")
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    root.setLevel(numeric)

    directory = Path(log_dir) if log_dir is not None else get_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        file_handler = logging.FileHandler(directory / f"local-{_today()}.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    )
    if numeric == logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    return root


def log_kernel_event(event_type: str, details: str, kernel_id: str = "default") -> None:
    """Append one line to today's kernel event log."""
    directory = get_log_dir()
    line = f"{datetime.now().isoformat(timespec='seconds')} | {event_type} | kernel={kernel_id} | {details}\n"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with open(directory / f"kernel-events-{_today()}.log", "a", encoding="utf-8") as fh:
            fh.write(line)
    except OSError as e:
        logger.warning("Could not write kernel event log: %s", e)


def log_render(kernel_id: str, template_chars: int, rendered_chars: int) -> None:
    log_kernel_event(
        "render",
        f"template_chars={template_chars}, rendered_chars={rendered_chars}",
        kernel_id=kernel_id,
    )


def log_dispatch(kernel_id: str, model_id: str, messages: int, tools: int, round: int = 0) -> None:
    log_kernel_event(
        "dispatch",
        f"model={model_id}, messages={messages}, tools={tools}, round={round}",
        kernel_id=kernel_id,
    )


def log_tool_call(kernel_id: str, function_name: str, call_id: str, ok: bool = True) -> None:
    call = call_id[:8] + "..." if len(call_id) > 8 else call_id
    log_kernel_event(
        "tool_call",
        f"function={function_name}, id={call}, ok={ok}",
        kernel_id=kernel_id,
    )
