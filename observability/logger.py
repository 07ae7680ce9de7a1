"""
Observability Layer: structured execution logging & node timings.

Responsibility:
- Log engine events as structured JSON lines
- Time node processor calls
- Carry execution_id / trace_id on every entry
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("observability")


class Observability:
    """Structured logger bound to one workflow execution."""

    def __init__(self, execution_id: str | None = None, template_id: str | None = None):
        self.execution_id = execution_id or str(uuid.uuid4())
        self.template_id = template_id
        self.trace_id = str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Log a structured event."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "execution_id": self.execution_id,
            "template_id": self.template_id,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, default=str))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Context manager timing a node processor call."""
        start_time = time.perf_counter()
        meta = metadata or {}
        try:
            yield
            success = True
            error = None
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log_event(
                "node_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
                level="INFO" if success else "WARNING",
            )
