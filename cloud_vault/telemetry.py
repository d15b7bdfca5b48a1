"""In-process telemetry sink for service metrics and events."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List
from datetime import datetime, timezone

from .config import ObservabilityConfig
from .models import ObservabilityEvent

logger = logging.getLogger(__name__)


@dataclass
class TelemetryCollector:
    config: ObservabilityConfig
    metrics: List[Dict[str, float]] = field(default_factory=list)
    events: List[ObservabilityEvent] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def emit_metric(self, name: str, value: float, labels: Dict[str, str] | None = None) -> None:
        payload = {
            "name": name,
            "value": value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(labels or {}),
        }
        with self._lock:
            self.metrics.append(payload)

    def emit_event(self, message: str, attributes: Dict[str, str] | None = None) -> None:
        event = ObservabilityEvent(event_type="custom", message=message, attributes=attributes)
        with self._lock:
            self.events.append(event)
        logger.debug("telemetry event %s %s", message, attributes or {})

    def metric_values(self, name: str) -> List[float]:
        with self._lock:
            return [float(metric["value"]) for metric in self.metrics if metric.get("name") == name]
