from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FILE_ENV = "HAPPEN_LOG_FILE"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def default_log_path() -> Path:
    override = os.getenv(LOG_FILE_ENV)
    if override:
        return Path(override).expanduser()
    state_home = os.getenv("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state_home) / "happen" / "happen.log"


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> Path:
    """Send all logging to a file; the terminal belongs to the UI."""
    log_file = log_file or default_log_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    root_logger.addHandler(file_handler)
    # dateutil warns about unknown timezone names; keep those off the screen.
    logging.captureWarnings(True)
    for noisy in ("urllib3", "charset_normalizer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file
