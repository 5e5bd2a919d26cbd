"""
utils/helpers.py
Shared utility functions used across services.
"""
import uuid
import logging
from datetime import datetime, timezone
from pathlib import PurePosixPath

# Configure module logger
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

def get_logger(name: str) -> logging.Logger:
    """Return a named logger."""
    return logging.getLogger(name)


def generate_id() -> str:
    """Generate a unique record ID."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what MongoDB hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def summarize_names(names: list[str], limit: int = 5) -> str:
    """Join the first `limit` names, with an ellipsis when more exist."""
    summary = ", ".join(names[:limit])
    return f"{summary}..." if len(names) > limit else summary


def safe_filename(name: str) -> str:
    """Strip any directory part from an uploaded file name."""
    return PurePosixPath(name.replace("\\", "/")).name
