import json
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from ambulink.core.logger import get_logger

logger = get_logger(__name__)

_write_lock = threading.Lock()


def _log_file() -> Path:
    log_dir = Path(os.getenv("AUDIT_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "audit.log"


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def log_event(event_type: str, payload: Dict[str, Any], request_id: Optional[str] = None, run_id: Optional[str] = None) -> None:
    """
    Append one JSON line to the audit log.
    `request_id` is the transport request id, `run_id` the HTTP X-Request-ID when known.
    """
    record = {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "event": event_type,
        "request_id": request_id,
        "run_id": run_id,
        **payload,
    }
    try:
        line = json.dumps(record, ensure_ascii=False, default=_default)
        with _write_lock:
            with _log_file().open("a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError as exc:
        logger.warning("audit write failed for %s: %s", event_type, exc)
