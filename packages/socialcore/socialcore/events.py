from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def _min_level() -> int:
    raw = os.getenv("SOCIAL_LOG_LEVEL", "info").strip().lower()
    return LEVELS.get(raw, LEVELS["info"])


def log_event(event: str, *, level: str = "info", **fields: Any) -> None:
    if LEVELS.get(level, LEVELS["info"]) < _min_level():
        return
    record: dict[str, Any] = {
        "event": event,
        "level": level,
        "ts": datetime.now(timezone.utc).isoformat(),
    }
    record.update(fields)
    print(json.dumps(record, ensure_ascii=True, default=str))
