"""
Structured record of every rejected or failed upstream call.

Each failure is written as one JSON line to `<RELAY_LOG_DIR>/failures.log`
(rotated at 5 MB, two backups) and summarized in a single line on the
`key_relay` logger. The file (and `RELAY_LOG_DIR`) is only resolved on the
first failure, and a failure to open or write it never interrupts the relay.
"""

import os
import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from .error_handler import mask_credential

DEFAULT_LOG_DIR = "logs"
FAILURE_LOG_NAME = "failures.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 2

lib_logger = logging.getLogger("key_relay")
failure_logger = logging.getLogger("key_relay.failures")
failure_logger.setLevel(logging.INFO)
failure_logger.propagate = False
if not failure_logger.handlers:
    failure_logger.addHandler(logging.NullHandler())

_file_attached = False


class JsonLineFormatter(logging.Formatter):
    def format(self, record):
        # Records are logged as dicts
        return json.dumps(record.msg, default=str)


def _attach_file_handler() -> bool:
    """Swaps the placeholder handler for the rotating file; False if the file can't be opened."""
    global _file_attached
    if _file_attached:
        return True
    log_dir = os.getenv("RELAY_LOG_DIR", DEFAULT_LOG_DIR)
    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, FAILURE_LOG_NAME),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
    except OSError as e:
        lib_logger.warning(f"Failure log unavailable in '{log_dir}': {e}")
        return False

    handler.setFormatter(JsonLineFormatter())
    failure_logger.handlers.clear()
    failure_logger.addHandler(handler)
    _file_attached = True
    return True


def _cause_chain(error: Optional[BaseException], limit: int = 5) -> List[Dict[str, str]]:
    chain = []
    seen = set()
    while error is not None and id(error) not in seen and len(chain) < limit:
        seen.add(id(error))
        chain.append({"type": type(error).__name__, "message": str(error)[:2000]})
        error = error.__cause__ or error.__context__
    return chain


def failure_record(
    api_key: Optional[str],
    model: Optional[str],
    attempt: int,
    status_code: Optional[int] = None,
    raw_response_text: Optional[str] = None,
    error: Optional[BaseException] = None,
) -> Dict[str, Any]:
    chain = _cause_chain(error)
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "credential": mask_credential(api_key),
        "model": model,
        "attempt": attempt,
        "status_code": status_code,
        "error_type": type(error).__name__ if error else None,
        "error_message": str(error)[:5000] if error else None,
        "upstream_body": raw_response_text[:10000] if raw_response_text else None,
        "cause_chain": chain if len(chain) > 1 else None,
    }


def log_failure(
    api_key: Optional[str],
    model: Optional[str],
    attempt: int,
    status_code: Optional[int] = None,
    raw_response_text: Optional[str] = None,
    error: Optional[BaseException] = None,
):
    """
    Writes one failure record and its summary line.

    Args:
        api_key: The credential used for the call; only its masked form is kept.
        model: Requested model, or None for model listing calls.
        attempt: 1-based attempt number within the rotation loop.
        status_code: Upstream HTTP status, when a response arrived.
        raw_response_text: Upstream response body.
        error: The parsed upstream error or transport exception, if any.
    """
    record = failure_record(api_key, model, attempt, status_code, raw_response_text, error)
    summary = (
        f"Upstream call failed for model {model} with key {record['credential']} "
        f"(attempt {attempt}, status {status_code})."
    )

    if _attach_file_handler():
        failure_logger.error(record)

    lib_logger.error(summary)
