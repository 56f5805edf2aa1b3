# src/smart_planner/logging_setup.py

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Minimum console level per logger prefix (longest prefix wins).
# The dispatcher logs every registered/fired job and the store every write; on the
# console only their problems matter. Plan summaries from the service stay visible.
CONSOLE_LEVELS: dict[str, int] = {
    "smart_planner": logging.INFO,
    "smart_planner.engine.dispatcher": logging.WARNING,
    "smart_planner.engine.fallback": logging.WARNING,
    "smart_planner.tasks.task_store": logging.WARNING,
    "smart_planner.oracles": logging.WARNING,
}

# Anything outside the package (httpx, openai, py.warnings) only reaches the console at ERROR.
_FOREIGN_CONSOLE_LEVEL = logging.ERROR

_NOISY_LIBRARIES = ("httpx", "httpcore", "openai")


def console_level_for(name: str) -> int:
    best: str | None = None
    for prefix in CONSOLE_LEVELS:
        if (name == prefix or name.startswith(prefix + ".")) and (best is None or len(prefix) > len(best)):
            best = prefix
    return CONSOLE_LEVELS[best] if best is not None else _FOREIGN_CONSOLE_LEVEL


class _EngineConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= console_level_for(record.name)


def setup_logging(
    *,
    log_dir: str | Path = ".local/smart",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 5 * 1024 * 1024,
    backups: int = 3,
) -> Path:
    """
    Console: plan summaries and problems, filtered per module.
    File: everything, including each job fire, rotated so a long-running service stays bounded.

    Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "smart-planner.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_EngineConsoleFilter())
    root.addHandler(ch)

    fh = RotatingFileHandler(str(log_file), maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    logging.captureWarnings(True)

    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file
