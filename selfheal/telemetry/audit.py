from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from selfheal.models import utcnow

logger = logging.getLogger(__name__)


class ActivityLogger:
    """
    Append-only JSONL trail of remediation decisions, one record per event.
    Consumed by the dashboard; every record also goes to the process log.
    """

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        level: str = "info",
        actor: str = "selfheal",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or utcnow().isoformat(),
            "correlation_id": correlation_id,
            "actor": actor,
            "level": level,
            "event_type": event_type,
            "payload": payload,
        }
        logger.log(logging.WARNING if level == "warning" else logging.INFO, "%s %s", event_type, payload)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
