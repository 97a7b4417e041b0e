"""
Logging for the monitor: daily rotating file (DEBUG) plus console (configurable level).
Every handler carries a SecretFilter so the Slack token and PBX credential never reach a log line,
whichever module logged it (messages, arguments and tracebacks are all redacted).
"""
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Iterable

from pjsipwatch.config import get_config_dir

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
REDACTED = "<redacted>"


class SecretFilter(logging.Filter):
    """Replace known secret values in a record before any handler formats it."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        # Longest first so a token containing another secret is masked whole
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)
        return True


def setup_logging(
    log_path: str | None = None,
    console_level: str = "INFO",
    secrets: Iterable[str] = (),
) -> logging.Logger:
    """
    Configure the root logger and return the app logger ('pjsipwatch').
    Existing root handlers are replaced.
    """
    log_dir = Path(log_path) if log_path else get_config_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    secret_filter = SecretFilter(secrets)

    fh = TimedRotatingFileHandler(log_dir / "pjsipwatch.log", when="midnight", backupCount=30, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.getLevelName(console_level.upper()))
    for handler in (fh, ch):
        handler.setFormatter(fmt)
        handler.addFilter(secret_filter)
        root.addHandler(handler)

    # httpx logs every request at INFO, URL included
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger("pjsipwatch")
    logger.setLevel(logging.DEBUG)
    return logger
