"""Latency metrics for Gradio calls."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from luna_vits.logging import get_logger

logger = get_logger("metrics")


@dataclass
class CallMetrics:
    """Timings of a single submit/predict call."""

    endpoint: str = ""
    fn_index: int = -1
    protocol: str = ""
    session_hash: str = ""
    event_id: Optional[str] = None
    outcome: str = ""
    data_events: int = 0

    # Timestamps (monotonic, seconds)
    started_at: float = field(default_factory=time.monotonic)
    queue_joined_at: float = 0.0
    first_data_at: float = 0.0
    finished_at: float = 0.0

    @property
    def queue_join_ms(self) -> float:
        """Submission to queue acknowledgement."""
        if self.queue_joined_at:
            return (self.queue_joined_at - self.started_at) * 1000
        return 0.0

    @property
    def first_data_ms(self) -> float:
        if self.first_data_at:
            return (self.first_data_at - self.started_at) * 1000
        return 0.0

    @property
    def total_ms(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at) * 1000
        return 0.0

    def mark_joined(self, event_id: Optional[str] = None) -> None:
        if not self.queue_joined_at:
            self.queue_joined_at = time.monotonic()
        if event_id:
            self.event_id = event_id

    def mark_data(self) -> None:
        self.data_events += 1
        if not self.first_data_at:
            self.first_data_at = time.monotonic()

    def mark_finished(self, outcome: str) -> None:
        self.finished_at = time.monotonic()
        self.outcome = outcome

    def summary(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "outcome": self.outcome,
            "data_events": self.data_events,
            "queue_join_ms": round(self.queue_join_ms, 1),
            "first_data_ms": round(self.first_data_ms, 1),
            "total_ms": round(self.total_ms, 1),
        }

    def emit(self) -> None:
        """Log the call metrics summary."""
        logger.info(
            "Call metrics: %s",
            self.summary(),
            extra={
                "session_hash": self.session_hash,
                "event_id": self.event_id,
                "fn_index": self.fn_index,
                "protocol": self.protocol,
                "event": "call_finished",
            },
        )
