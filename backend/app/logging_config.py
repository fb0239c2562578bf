"""Logging configuration for Sobek backend."""

import logging
import sys

LOGGER_NAMESPACE = "sobek"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the ``sobek`` logger hierarchy (idempotent)."""
    global _configured
    root = logging.getLogger(LOGGER_NAMESPACE)
    root.setLevel(level.upper())
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``sobek`` namespace."""
    if not name.startswith(LOGGER_NAMESPACE):
        name = f"{LOGGER_NAMESPACE}.{name}"
    return logging.getLogger(name)


def log_escrow_event(
    logger: logging.Logger,
    event: str,
    transaction_id: str | None = None,
    level: int = logging.INFO,
    **fields,
) -> None:
    """Log an escrow event as ``event | transaction=... | key=value``."""
    parts = [event]
    if transaction_id:
        parts.append(f"transaction={transaction_id}")
    parts.extend(f"{key}={value}" for key, value in fields.items() if value is not None)
    logger.log(level, " | ".join(parts))
