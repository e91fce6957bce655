"""
Logging setup for gateway services.

Configures the root logger once per process. Fields passed through
``extra={...}`` are appended to each line as ``key=value`` pairs so that
tenant and instance context stays greppable.
"""

import logging
import sys

from gatewaycore.settings import get_settings

# Attributes present on every LogRecord; anything else came from ``extra``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

_configured = False


class KeyValueFormatter(logging.Formatter):
    """Formatter that renders ``extra`` fields as trailing key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if not extras:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{line} | {pairs}"


def setup_logging(level: str | None = None) -> None:
    """
    Configure root logging for the process.

    Safe to call multiple times; only the first call installs the handler.

    Args:
        level: Log level name. Defaults to LOG_LEVEL from settings.
    """
    global _configured

    level_name = (level or get_settings().LOG_LEVEL).upper()
    root = logging.getLogger()
    root.setLevel(level_name)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        KeyValueFormatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
