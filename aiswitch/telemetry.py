"""Logging for the aiswitch gateway.

Every proxied exchange ends in one JSON line on the "aiswitch" logger, which
writes to stdout and, when a log file is configured, appends to that file.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("aiswitch")

_FORMAT = logging.Formatter(
    "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)


def setup_logging(log_file: Optional[str], level: str = "INFO") -> None:
    """Attach the stdout and log file handlers once.

    An empty ``log_file`` logs to stdout only.
    """
    logger.setLevel(level.upper())
    if logger.handlers:
        return

    handlers: list = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a"))

    for handler in handlers:
        handler.setFormatter(_FORMAT)
        logger.addHandler(handler)


def log_exchange(
    *,
    request_id: int,
    provider: str,
    route: str,
    model: str,
    stream: bool,
    outcome: str,
    usage: Optional[Dict[str, Any]] = None,
    speed: Optional[int] = None,
    error: Optional[str] = None
) -> None:
    """Log the end of one proxied exchange as a JSON line.

    Args:
        request_id: Audit row id of the exchange.
        provider: Id of the provider the request went to.
        route: Upstream path (``completions`` or ``chat/completions``).
        model: Model named in the outbound request.
        stream: Whether the response was streamed.
        outcome: Short outcome label ("success", "upstream_error").
        usage: Resolved token counts, if any.
        speed: Tokens per second, if derived.
        error: Error message if the exchange failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "provider": provider,
        "route": route,
        "model": model,
        "stream": stream,
        "outcome": outcome,
    }

    if usage:
        record["usage"] = usage

    if speed is not None:
        record["tokens_per_second"] = speed

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
