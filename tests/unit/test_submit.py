"""Tests for call submission across the direct, WebSocket and SSE transports."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from luna_vits.gradio.constants import BROKEN_CONNECTION_MSG, QUEUE_FULL_MSG, UNEXPECTED_ERROR_MSG
from luna_vits.gradio.errors import InvalidArgumentError, PredictionError
from luna_vits.gradio.events import ClientOptions, EventType, Stage


class _Recorder:
    """Stands in for ``GradioClient.post_data``."""

    def __init__(self, replies: dict[str, tuple[dict[str, Any], int]]) -> None:
        self.replies = replies
        self.calls: list[tuple[str, Any]] = []

    async def __call__(self, url: str, body: Any, headers: Any = None) -> tuple[dict[str, Any], int]:
        self.calls.append((url, body))
        for suffix, reply in self.replies.items():
            if url.endswith(suffix):
                return reply
        return {}, 200


def _stream_of(frames: list[dict[str, Any]], hold_open: bool = False):
    """Build a ``stream_events`` replacement replaying ``frames`` once."""

    async def stream_events(url: str):
        for frame in frames:
            yield json.dumps(frame)
            await asyncio.sleep(0)
        if hold_open:
            await asyncio.Event().wait()

    return stream_events


def _terminal(events):
    return [e for e in events if e.is_terminal]


class TestDirect:
    async def test_data_then_complete(self, make_client):
        client = make_client(protocol="sse_v3", enable_queue=False)
        client.post_data = _Recorder({"/run/predict": ({"data": ["hello"]}, 200)})

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        kinds = [(e.type, e.stage) for e in events]
        assert kinds == [
            (EventType.STATUS, Stage.PENDING),
            (EventType.DATA, None),
            (EventType.STATUS, Stage.COMPLETE),
        ]
        assert events[1].data == ["hello"]
        assert client.post_data.calls[0][1]["data"] == ["hi"]
        await client.close()

    async def test_default_filter_yields_data_only(self, make_client):
        client = make_client(enable_queue=False)
        client.post_data = _Recorder({"/run/predict": ({"data": ["hello"]}, 200)})

        events = [e async for e in client.submit("/predict", {"text": "hi"})]
        assert [e.type for e in events] == [EventType.DATA]
        await client.close()

    async def test_predict(self, make_client):
        client = make_client(enable_queue=False)
        client.post_data = _Recorder({"/run/predict": ({"data": ["hello"]}, 200)})
        assert await client.predict(0, ["hi"]) == ["hello"]
        await client.close()

    async def test_predict_raises_on_error(self, make_client):
        client = make_client(enable_queue=False)
        client.post_data = _Recorder({"/run/predict": ({"error": "bad input"}, 500)})
        with pytest.raises(PredictionError, match="bad input") as excinfo:
            await client.predict("/predict", ["hi"])
        assert excinfo.value.status.stage is Stage.ERROR
        await client.close()

    async def test_unknown_endpoint_raises_before_network(self, make_client):
        client = make_client(enable_queue=False)
        client.post_data = _Recorder({})
        with pytest.raises(InvalidArgumentError):
            client.submit("/missing", ["hi"])
        assert client.post_data.calls == []
        await client.close()


class TestWebSocket:
    @pytest.fixture
    def client(self, make_client):
        return make_client(protocol="ws", version="3.40.0")

    async def test_completed_with_error_yields_single_error(self, client, stub_websocket, monkeypatch):
        ws = stub_websocket(
            [
                {"msg": "send_hash"},
                {"msg": "estimation", "rank": 0, "queue_size": 1},
                {"msg": "send_data"},
                {"msg": "process_starts"},
                {"msg": "process_completed", "success": False, "output": {"error": "boom"}},
            ]
        )
        monkeypatch.setattr("luna_vits.gradio.submit.websockets.connect", lambda url, **kw: ws)

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        assert not [e for e in events if e.type is EventType.DATA]
        terminal = _terminal(events)
        assert len(terminal) == 1
        assert terminal[0].status.message == "boom"
        assert ws.sent[0] == {"fn_index": 0, "session_hash": client.session_hash}
        assert ws.sent[1]["data"] == ["hi"]
        await client.close()

    async def test_data_and_completion(self, client, stub_websocket, monkeypatch):
        ws = stub_websocket(
            [
                {"msg": "send_hash"},
                {"msg": "send_data"},
                {"msg": "process_completed", "success": True, "output": {"data": ["ok"]}},
            ]
        )
        monkeypatch.setattr("luna_vits.gradio.submit.websockets.connect", lambda url, **kw: ws)
        assert await client.predict("/predict", ["hi"]) == ["ok"]
        await client.close()

    async def test_close_before_completion_is_broken(self, client, stub_websocket, monkeypatch):
        ws = stub_websocket([{"msg": "send_hash"}])
        monkeypatch.setattr("luna_vits.gradio.submit.websockets.connect", lambda url, **kw: ws)

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        terminal = _terminal(events)
        assert len(terminal) == 1
        assert terminal[0].status.broken
        assert terminal[0].status.message == BROKEN_CONNECTION_MSG
        await client.close()

    async def test_legacy_app_sends_hash_first(self, make_client, stub_websocket, monkeypatch):
        client = make_client(protocol="ws", version="3.5.0")
        ws = stub_websocket([{"msg": "process_completed", "success": True, "output": {"data": ["ok"]}}])
        monkeypatch.setattr("luna_vits.gradio.submit.websockets.connect", lambda url, **kw: ws)
        await client.predict("/predict", ["hi"])
        assert ws.sent == [{"hash": client.session_hash}]
        await client.close()

    async def test_cancel_closes_socket_then_resets(self, client, stub_websocket, monkeypatch):
        ws = stub_websocket(
            [{"msg": "send_hash"}, {"msg": "estimation", "rank": 1, "queue_size": 2}],
            hold_open=True,
        )
        monkeypatch.setattr("luna_vits.gradio.submit.websockets.connect", lambda url, **kw: ws)
        client.post_data = _Recorder({})

        submission = client.submit("/predict", ["hi"], all_events=True)
        assert (await submission.__anext__()).stage is Stage.PENDING
        assert (await submission.__anext__()).status.position == 1

        await submission.cancel()
        rest = [e async for e in submission]
        assert [e.stage for e in rest] == [Stage.COMPLETE]
        assert ws.closed
        assert client.post_data.calls == [
            ("http://app.test/reset", {"fn_index": 0, "session_hash": client.session_hash})
        ]
        await client.close()


class TestPerCallStream:
    @staticmethod
    def _recording(frames, urls):
        replay = _stream_of(frames)

        async def stream_events(url: str):
            urls.append(url)
            async for raw in replay(url):
                yield raw

        return stream_events

    async def test_join_then_send_data(self, make_client):
        client = make_client(protocol="sse")
        client.post_data = _Recorder({})
        urls: list[str] = []
        client.stream_events = self._recording(
            [
                {"msg": "heartbeat"},
                {"msg": "send_data", "event_id": "q"},
                {"msg": "process_completed", "success": True, "output": {"data": ["ok"]}},
            ],
            urls,
        )

        assert await client.predict("/predict", ["hi"]) == ["ok"]
        assert urls == [f"http://app.test/queue/join?fn_index=0&session_hash={client.session_hash}"]
        ((url, body),) = client.post_data.calls
        assert url == "http://app.test/queue/data"
        assert body["event_id"] == "q"
        assert body["data"] == ["hi"]
        await client.close()

    async def test_rejected_data_post_is_broken_connection(self, make_client):
        client = make_client(protocol="sse")
        client.post_data = _Recorder({"/queue/data": ({"error": "gone"}, 500)})
        client.stream_events = self._recording(
            [
                {"msg": "send_data", "event_id": "q"},
                {"msg": "process_completed", "success": True, "output": {"data": ["ok"]}},
            ],
            [],
        )

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        assert not [e for e in events if e.type is EventType.DATA]
        terminal = _terminal(events)
        assert len(terminal) == 1
        assert terminal[0].status.message == BROKEN_CONNECTION_MSG
        await client.close()


class TestSharedStream:
    async def test_diff_streaming(self, make_client):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev1"}, 200)})
        client.stream_events = _stream_of(
            [
                {"msg": "estimation", "event_id": "ev1", "rank": 0, "queue_size": 1},
                {"msg": "process_starts", "event_id": "ev1"},
                {"msg": "heartbeat"},
                {"msg": "process_generating", "event_id": "ev1", "success": True, "output": {"data": ["x"]}},
                {
                    "msg": "process_generating",
                    "event_id": "ev1",
                    "success": True,
                    "output": {"data": [[["append", [], "y"]]]},
                },
                {"msg": "process_completed", "event_id": "ev1", "success": True, "output": {"data": ["xy"]}},
            ]
        )

        events = [e async for e in client.submit("/predict", ["hi"])]
        assert [e.data for e in events] == [["x"], ["xy"], ["xy"]]
        assert "ev1" not in client.event_callbacks
        assert "ev1" not in client.pending_diff_streams
        await client.close()

    async def test_frames_before_registration_are_replayed(self, make_client):
        client = make_client(protocol="sse_v1")
        client.dispatch_stream_message(
            {"msg": "process_completed", "event_id": "ev9", "success": True, "output": {"data": ["early"]}}
        )
        assert "ev9" in client.pending_stream_messages

        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev9"}, 200)})
        client.stream_events = _stream_of([], hold_open=True)
        assert await client.predict("/predict", ["hi"]) == ["early"]
        assert "ev9" not in client.pending_stream_messages
        await client.close()

    async def test_cancel_yields_single_terminal(self, make_client):
        client = make_client(protocol="sse_v2")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev2"}, 200)})
        client.stream_events = _stream_of(
            [{"msg": "estimation", "event_id": "ev2", "rank": 3, "queue_size": 4}],
            hold_open=True,
        )

        submission = client.submit("/predict", ["hi"], all_events=True)
        first = await submission.__anext__()
        second = await submission.__anext__()
        assert first.stage is Stage.PENDING
        assert second.status.position == 3

        await submission.cancel()
        await submission.cancel()
        rest = [e async for e in submission]
        assert len(rest) == 1
        assert rest[0].stage is Stage.COMPLETE

        urls = [url for url, _ in client.post_data.calls]
        assert urls[-2:] == ["http://app.test/cancel", "http://app.test/reset"]
        assert client.post_data.calls[-1][1] == {"event_id": "ev2", "session_hash": client.session_hash}
        await client.close()

    async def test_queue_full(self, make_client):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"error": "full"}, 503)})
        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        assert events[-1].stage is Stage.ERROR
        assert events[-1].status.message == QUEUE_FULL_MSG
        await client.close()

    async def test_stream_drop_fails_pending_calls(self, make_client):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev3"}, 200)})
        client.stream_events = _stream_of([])

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        terminal = _terminal(events)
        assert len(terminal) == 1
        assert terminal[0].status.broken
        await client.close()

    async def test_log_events(self, make_client):
        client = make_client(protocol="sse_v3", options=ClientOptions(events=[EventType.LOG, EventType.DATA]))
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev4"}, 200)})
        client.stream_events = _stream_of(
            [
                {"msg": "log", "event_id": "ev4", "log": "warming up", "level": "info"},
                {"msg": "process_completed", "event_id": "ev4", "success": True, "output": {"data": ["ok"]}},
            ]
        )
        events = [e async for e in client.submit("/predict", ["hi"])]
        assert [e.type for e in events] == [EventType.LOG, EventType.DATA]
        assert events[0].log == "warming up"
        await client.close()

    async def test_frame_handling_failure_closes_stream(self, make_client, monkeypatch):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev6"}, 200)})
        client.stream_events = _stream_of(
            [{"msg": "estimation", "event_id": "ev6", "rank": 0, "queue_size": 1}],
            hold_open=True,
        )

        def unreadable(msg, last_stage):
            raise ValueError("unreadable frame")

        monkeypatch.setattr("luna_vits.gradio.submit.handle_message", unreadable)

        events = [e async for e in client.submit("/predict", ["hi"], all_events=True)]
        assert events[-1].stage is Stage.ERROR
        assert events[-1].status.message == UNEXPECTED_ERROR_MSG
        assert not client._stream_open
        assert "ev6" not in client.event_callbacks
        await client.close()

    async def test_timed_out_predict_cancels_call(self, make_client):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "evT"}, 200)})
        client.stream_events = _stream_of([], hold_open=True)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(client.predict("/predict", ["hi"]), 0.1)

        assert client.event_callbacks == {}
        assert not client._submissions
        urls = [url for url, _ in client.post_data.calls]
        assert urls == [
            "http://app.test/queue/join",
            "http://app.test/cancel",
            "http://app.test/reset",
        ]
        await client.close()


class TestClose:
    async def test_close_aborts_in_flight_calls(self, make_client):
        client = make_client(protocol="sse_v3")
        client.post_data = _Recorder({"/queue/join": ({"event_id": "ev5"}, 200)})
        client.stream_events = _stream_of([], hold_open=True)

        submission = client.submit("/predict", ["hi"], all_events=True)
        await submission.__anext__()
        await client.close()
        rest = [e async for e in submission]
        assert rest[-1].stage is Stage.ERROR
        assert rest[-1].status.broken
        assert submission.done
