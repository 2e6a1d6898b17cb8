"""Translation of raw queue frames into typed messages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

from luna_vits.gradio.constants import QUEUE_FULL_MSG
from luna_vits.gradio.events import Stage, Status


class MessageKind(Enum):
    HASH = auto()
    SEND_DATA = auto()
    UPDATE = auto()
    COMPLETE = auto()
    GENERATING = auto()
    LOG = auto()
    HEARTBEAT = auto()
    UNEXPECTED_ERROR = auto()
    NONE = auto()


@dataclass
class ParsedMessage:
    kind: MessageKind
    status: Optional[Status] = None
    data: Any = None


def _output(msg: dict[str, Any]) -> dict[str, Any]:
    output = msg.get("output")
    return output if isinstance(output, dict) else {}


def handle_message(msg: dict[str, Any], last_stage: Optional[Stage]) -> ParsedMessage:
    """Map one ``{"msg": ...}`` frame to a ParsedMessage.

    ``data`` is the frame's ``output`` object for generating/complete
    frames and the whole frame for log frames.
    """
    kind = msg.get("msg")
    code = msg.get("code")
    success = msg.get("success")

    if kind == "send_data":
        return ParsedMessage(MessageKind.SEND_DATA)
    if kind == "send_hash":
        return ParsedMessage(MessageKind.HASH)
    if kind == "heartbeat":
        return ParsedMessage(MessageKind.HEARTBEAT)
    if kind == "queue_full":
        return ParsedMessage(
            MessageKind.UPDATE,
            Status(Stage.ERROR, queue=True, message=QUEUE_FULL_MSG, code=code, success=success),
        )
    if kind == "unexpected_error":
        return ParsedMessage(
            MessageKind.UNEXPECTED_ERROR,
            Status(Stage.ERROR, queue=True, message=msg.get("message"), success=False),
        )
    if kind == "estimation":
        return ParsedMessage(
            MessageKind.UPDATE,
            Status(
                last_stage or Stage.PENDING,
                queue=True,
                code=code,
                size=msg.get("queue_size"),
                position=msg.get("rank"),
                eta=msg.get("rank_eta"),
                success=success,
            ),
        )
    if kind == "progress":
        return ParsedMessage(
            MessageKind.UPDATE,
            Status(
                Stage.PENDING,
                queue=True,
                code=code,
                progress_data=msg.get("progress_data"),
                success=success,
            ),
        )
    if kind == "log":
        return ParsedMessage(MessageKind.LOG, data=msg)
    if kind == "process_generating":
        output = _output(msg)
        return ParsedMessage(
            MessageKind.GENERATING,
            Status(
                Stage.GENERATING if success else Stage.ERROR,
                queue=True,
                message=None if success else output.get("error"),
                code=code,
                progress_data=msg.get("progress_data"),
                eta=msg.get("average_duration"),
            ),
            data=output if success else None,
        )
    if kind == "process_completed":
        output = _output(msg)
        if "error" in output:
            return ParsedMessage(
                MessageKind.UPDATE,
                Status(
                    Stage.ERROR,
                    queue=True,
                    message=output.get("error"),
                    visible=output.get("visible"),
                    duration=output.get("duration"),
                    code=code,
                    success=success,
                ),
            )
        return ParsedMessage(
            MessageKind.COMPLETE,
            Status(
                Stage.COMPLETE if success else Stage.ERROR,
                queue=True,
                code=code,
                progress_data=msg.get("progress_data"),
                changed_state_ids=output.get("changed_state_ids") if success else None,
                success=success,
            ),
            data=output if success else None,
        )
    if kind == "process_starts":
        return ParsedMessage(
            MessageKind.UPDATE,
            Status(
                Stage.PENDING,
                queue=True,
                code=code,
                size=msg.get("rank"),
                position=0,
                success=success,
                eta=msg.get("eta"),
            ),
        )
    return ParsedMessage(MessageKind.NONE, Status(Stage.ERROR, queue=True))
