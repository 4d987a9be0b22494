"""
SWARM — Shared Logging Configuration

Centralized logging setup for all SWARM components.

Two output formats are supported: the pipe-delimited text format used on
developer machines, and newline-delimited JSON for log aggregators. Context
passed through ``extra=`` (session_id, resource_id, operation, ...) is kept
as separate JSON fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional


# =============================================================================
# Log Format
# =============================================================================
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Attributes every LogRecord has; anything else came in through ``extra``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "component": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# =============================================================================
# Setup
# =============================================================================
def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """
    Configure the root logger for a SWARM process.

    Args:
        level: Log level name
        fmt: "text" or "json"
    """
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a logger for a component, optionally overriding its level."""
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


# =============================================================================
# Component Loggers
# =============================================================================
REGISTRY_LOGGER = "swarm.registry"
HEARTBEAT_LOGGER = "swarm.agent.heartbeat"
RUNNER_LOGGER = "swarm.agent.runner"
REAPER_LOGGER = "swarm.control.reaper"
ORCHESTRATOR_LOGGER = "swarm.control.orchestrator"
PROVISIONER_LOGGER = "swarm.provisioner"
API_LOGGER = "swarm.api"
