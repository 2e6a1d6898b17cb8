"""Protocol events produced while a Gradio call is in flight."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Stage(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)


class EventType(str, Enum):
    STATUS = "status"
    DATA = "data"
    LOG = "log"


@dataclass
class Status:
    """Queue/progress state of one call."""

    stage: Stage
    queue: bool = False
    message: Optional[str] = None
    code: Optional[str] = None
    size: Optional[int] = None
    position: Optional[int] = None
    eta: Optional[float] = None
    success: Optional[bool] = None
    progress_data: Optional[list[Any]] = None
    broken: bool = False
    changed_state_ids: Optional[list[int]] = None
    visible: Optional[bool] = None
    duration: Optional[float] = None
    time: float = field(default_factory=time.time)


@dataclass
class GradioEvent:
    """A single item of a submission's event sequence.

    ``STATUS`` events carry ``status``; ``DATA`` events carry the mapped
    output list in ``data``; ``LOG`` events carry ``log`` and ``level``.
    """

    type: EventType
    endpoint: str
    fn_index: int
    status: Optional[Status] = None
    data: Optional[list[Any]] = None
    log: Optional[str] = None
    level: Optional[str] = None
    event_data: Any = None
    trigger_id: Optional[int] = None
    time: float = field(default_factory=time.time)

    @property
    def stage(self) -> Optional[Stage]:
        return self.status.stage if self.status else None

    @property
    def is_terminal(self) -> bool:
        return self.type is EventType.STATUS and bool(
            self.status and self.status.stage.terminal
        )


@dataclass
class CallEnvelope:
    """Per-invocation body sent to run/queue endpoints."""

    data: list[Any]
    fn_index: int
    event_data: Any = None
    trigger_id: Optional[int] = None

    def to_body(self, session_hash: str, **extra: Any) -> dict[str, Any]:
        body = {
            "data": self.data,
            "event_data": self.event_data,
            "fn_index": self.fn_index,
            "trigger_id": self.trigger_id,
            "session_hash": session_hash,
        }
        body.update(extra)
        return body


@dataclass
class ClientOptions:
    hf_token: str = ""
    auth: Optional[tuple[str, str]] = None
    events: list[EventType] = field(default_factory=lambda: [EventType.DATA])
    with_null_state: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    metrics_enabled: bool = True
