"""Tests for queue frame translation."""

from luna_vits.gradio.constants import QUEUE_FULL_MSG
from luna_vits.gradio.events import Stage
from luna_vits.gradio.messages import MessageKind, handle_message


class TestHandleMessage:
    def test_control_frames(self):
        assert handle_message({"msg": "send_hash"}, None).kind is MessageKind.HASH
        assert handle_message({"msg": "send_data"}, None).kind is MessageKind.SEND_DATA
        assert handle_message({"msg": "heartbeat"}, None).kind is MessageKind.HEARTBEAT

    def test_queue_full(self):
        parsed = handle_message({"msg": "queue_full"}, None)
        assert parsed.kind is MessageKind.UPDATE
        assert parsed.status.stage is Stage.ERROR
        assert parsed.status.message == QUEUE_FULL_MSG

    def test_estimation_keeps_last_stage(self):
        msg = {"msg": "estimation", "rank": 2, "queue_size": 5, "rank_eta": 1.5}
        parsed = handle_message(msg, Stage.GENERATING)
        assert parsed.status.stage is Stage.GENERATING
        assert (parsed.status.position, parsed.status.size, parsed.status.eta) == (2, 5, 1.5)
        assert handle_message(msg, None).status.stage is Stage.PENDING

    def test_generating(self):
        msg = {"msg": "process_generating", "success": True, "output": {"data": ["x"]}}
        parsed = handle_message(msg, None)
        assert parsed.kind is MessageKind.GENERATING
        assert parsed.status.stage is Stage.GENERATING
        assert parsed.data == {"data": ["x"]}

    def test_generating_failure(self):
        msg = {"msg": "process_generating", "success": False, "output": {"error": "bad"}}
        parsed = handle_message(msg, None)
        assert parsed.status.stage is Stage.ERROR
        assert parsed.status.message == "bad"
        assert parsed.data is None

    def test_completed(self):
        msg = {"msg": "process_completed", "success": True, "output": {"data": [1]}}
        parsed = handle_message(msg, None)
        assert parsed.kind is MessageKind.COMPLETE
        assert parsed.status.stage is Stage.COMPLETE
        assert parsed.data == {"data": [1]}

    def test_completed_with_error(self):
        msg = {"msg": "process_completed", "success": False, "output": {"error": "boom"}}
        parsed = handle_message(msg, None)
        assert parsed.kind is MessageKind.UPDATE
        assert parsed.status.stage is Stage.ERROR
        assert parsed.status.message == "boom"
        assert parsed.data is None

    def test_log(self):
        msg = {"msg": "log", "log": "loading", "level": "info"}
        parsed = handle_message(msg, None)
        assert parsed.kind is MessageKind.LOG
        assert parsed.data is msg

    def test_unknown(self):
        parsed = handle_message({"msg": "something_new"}, None)
        assert parsed.kind is MessageKind.NONE
