from datetime import datetime
from logging import getLogger, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter, StreamHandler
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH


# Loggers of this project; everything else is 3rd party.
PROJECT_PREFIXES = ("voicestream", "__main__", "demo")

# websockets logs every frame at DEBUG
_CHATTY_LOGGERS = ("websockets", "httpx")

_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


class _ThirdPartyLogFilter(Filter):
    """Pass every project record, 3rd party records only at INFO+."""
    def filter(self, record):
        if record.name.startswith(PROJECT_PREFIXES):
            return True
        return record.levelno >= INFO


def setup_logging(level: Optional[int] = None, log_dir: Optional[Path] = None) -> Path:
    """
    Configure logging for the application.

    Console: `level`, or by LOG_LEVEL: DEV = DEBUG, PROD = WARNING.
    File: a new timestamped file in `log_dir` (LOG_PATH by default) with
    DEBUG for project code and INFO+ for 3rd party, whatever the console shows.

    Returns the path to the log file.
    """
    if level is None:
        level = WARNING if LOG_LEVEL == "PROD" else DEBUG
    formatter = Formatter(_LOG_FORMAT)

    # handlers decide what is shown, the root lets everything through
    root = getLogger()
    root.setLevel(DEBUG)
    for name in _CHATTY_LOGGERS:
        getLogger(name).setLevel(INFO)

    console = StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_dir = log_dir or LOG_PATH
    log_dir.mkdir(parents=True, exist_ok=True)
    log_filename = log_dir / f"app_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_ThirdPartyLogFilter())
    root.addHandler(file_handler)

    getLogger(__name__).info("Logging to file: %s", log_filename)
    return log_filename
