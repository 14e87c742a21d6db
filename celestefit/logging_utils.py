from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any

from astropy.utils.exceptions import AstropyWarning


DEFAULT_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_file(logging_cfg: dict[str, Any], work_dir: Path, command: str) -> Path | None:
    """``file: auto`` -> ``<work_dir>/<command>.log``; other values pass through."""
    log_file = logging_cfg.get("file")
    if log_file is None:
        return None
    if isinstance(log_file, str) and log_file.strip().lower() == "auto":
        return Path(work_dir) / f"{command}.log"
    return Path(log_file)


def setup_logging(logging_cfg: dict[str, Any] | None = None, *, force: bool = False) -> None:
    cfg = logging_cfg or {}
    level_name = str(cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = str(cfg.get("format", DEFAULT_LOG_FORMAT))

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_path = cfg.get("file", None)
    if file_path and str(file_path).strip().lower() != "auto":
        p = Path(file_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(p, mode="a"))

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=force)

    if bool(cfg.get("ignore_warnings", False)):
        # FITS header fix-ups and WCS keyword chatter
        warnings.filterwarnings("ignore", category=AstropyWarning)
