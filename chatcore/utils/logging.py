"""Logging setup for chatcore, with API key redaction."""

import logging
import os
import re
import sys

from pydantic import BaseModel

# Provider key shapes: sk-..., sk-ant-..., and bearer tokens in headers
_SECRET_PATTERN = re.compile(r"(sk-[A-Za-z0-9_\-]{8,}|Bearer\s+[A-Za-z0-9_\-\.]{8,})")
_REDACTED = "[REDACTED]"

NOISY_LOGGERS = ("anthropic", "httpx", "httpcore", "uvicorn.access")


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"
    redact_secrets: bool = True


class SecretRedactingFilter(logging.Filter):
    """Mask API keys before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def redact(text: str) -> str:
    """Mask API keys in an arbitrary string."""
    return _SECRET_PATTERN.sub(_REDACTED, text)


def setup_logging(config: LogConfig | None = None) -> None:
    """Install a single stdout handler on the root logger."""
    config = config or LogConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(config.format, datefmt=config.datefmt))
    if config.redact_secrets:
        handler.addFilter(SecretRedactingFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Return the module logger, honoring LOG_LEVEL unless a level is given."""
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
