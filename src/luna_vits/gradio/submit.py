"""One Gradio call: transport state machine plus its pull-based event sequence.

A Submission runs a background task that drives the call over the
transport the app speaks (direct run, legacy WebSocket queue, per-call
SSE, or the shared SSE v1/v2/v2.1/v3 stream) and pushes GradioEvents
into an unbounded queue.  Iterating the Submission pulls from that
queue and stops after the single terminal status event.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

import aiohttp
import websockets
from packaging.version import Version
from websockets.exceptions import ConnectionClosedError, InvalidHandshake, InvalidURI

from luna_vits.gradio.constants import (
    BROKEN_CONNECTION_MSG,
    CANCEL_URL,
    DIFF_PROTOCOLS,
    LEGACY_WS_HASH_VERSION,
    QUEUE_DATA_URL,
    QUEUE_FULL_MSG,
    QUEUE_JOIN_URL,
    RESET_FAILED_MSG,
    RESET_URL,
    RUN_URL,
    SHARED_STREAM_PROTOCOLS,
    SIGN_PARAM,
    UNEXPECTED_ERROR_MSG,
)
from luna_vits.gradio.errors import TransportError
from luna_vits.gradio.events import CallEnvelope, EventType, GradioEvent, Stage, Status
from luna_vits.gradio.messages import MessageKind, ParsedMessage, handle_message
from luna_vits.gradio.payload import project_payload
from luna_vits.gradio.resolver import resolve_root
from luna_vits.gradio.schemas import Dependency
from luna_vits.gradio.stream import apply_diff_stream
from luna_vits.logging import get_logger
from luna_vits.metrics import CallMetrics

if TYPE_CHECKING:
    from luna_vits.gradio.client import GradioClient

logger = get_logger("gradio.submit")

_END = object()


class Submission:
    """Async iterator over the events of one in-flight call.

    Single pass and not restartable.  Production never waits for the
    consumer; events pile up in the queue until pulled.
    """

    def __init__(
        self,
        client: GradioClient,
        endpoint: str,
        fn_index: int,
        dependency: Optional[Dependency],
        envelope: CallEnvelope,
        direct: bool,
        all_events: bool = False,
    ) -> None:
        self._client = client
        self.endpoint = endpoint
        self.fn_index = fn_index
        self._dependency = dependency
        self._envelope = envelope
        self.protocol = "direct" if direct else client.config.protocol
        self._events = set(client.options.events)
        self._all_events = all_events

        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self._websocket: Any = None
        self._complete: Optional[Status] = None
        self._done = False
        self._exhausted = False
        self.event_id: Optional[str] = None

        self.metrics = CallMetrics(
            endpoint=endpoint,
            fn_index=fn_index,
            protocol=self.protocol,
            session_hash=client.session_hash,
        )

    # ── Iteration ───────────────────────────────────────────

    def __aiter__(self) -> Submission:
        return self

    async def __anext__(self) -> GradioEvent:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    @property
    def done(self) -> bool:
        """True once the terminal event has been produced."""
        return self._done

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"gradio-submit-{self.fn_index}")

    async def aclose(self) -> None:
        """Stop iterating; the call itself keeps running server-side."""
        self._exhausted = True

    # ── Event production ────────────────────────────────────

    @property
    def _log_extra(self) -> dict[str, Any]:
        return {
            "session_hash": self._client.session_hash,
            "event_id": self.event_id,
            "fn_index": self.fn_index,
            "endpoint": self.endpoint,
            "protocol": self.protocol,
        }

    def _fire(self, event: GradioEvent) -> None:
        if self._done:
            return
        terminal = event.is_terminal
        if event.type is EventType.STATUS and event.status and not terminal:
            self._client.last_status[self.fn_index] = event.status.stage
        if event.type is EventType.DATA:
            self.metrics.mark_data()
        if terminal:
            self._done = True
        if self._all_events or event.type in self._events:
            self._queue.put_nowait(event)
        if terminal:
            self._finish(event.status)

    def _finish(self, status: Optional[Status]) -> None:
        self._queue.put_nowait(_END)
        self._client.discard_submission(self)
        if self.event_id is not None:
            self._client.unregister_event(self.event_id)
        self.metrics.mark_finished(status.stage.value if status else "unknown")
        if self._client.options.metrics_enabled:
            self.metrics.emit()

    def _fire_status(self, status: Status) -> None:
        self._fire(
            GradioEvent(
                type=EventType.STATUS,
                endpoint=self.endpoint,
                fn_index=self.fn_index,
                status=status,
            )
        )

    def _fire_error(self, message: Optional[str], queue: bool = True, broken: bool = False) -> None:
        self._fire_status(Status(Stage.ERROR, queue=queue, message=message, broken=broken))

    def _fire_data(self, output: Any) -> None:
        config = self._client.config
        data = project_payload(
            list(output or []),
            self._dependency,
            config.components,
            "output",
            self._client.options.with_null_state,
        )
        self._fire(
            GradioEvent(
                type=EventType.DATA,
                endpoint=self.endpoint,
                fn_index=self.fn_index,
                data=data,
                event_data=self._envelope.event_data,
                trigger_id=self._envelope.trigger_id,
            )
        )

    def _fire_log(self, msg: dict[str, Any]) -> None:
        self._fire(
            GradioEvent(
                type=EventType.LOG,
                endpoint=self.endpoint,
                fn_index=self.fn_index,
                log=msg.get("log"),
                level=msg.get("level"),
                status=Status(
                    Stage.PENDING,
                    queue=True,
                    duration=msg.get("duration"),
                    visible=msg.get("visible"),
                ),
            )
        )

    def _process(self, msg: dict[str, Any], parsed: ParsedMessage) -> None:
        """Apply one parsed queue frame to this call's state."""
        kind, status, data = parsed.kind, parsed.status, parsed.data

        if kind is MessageKind.UPDATE and status is not None:
            self._fire_status(status)
        elif kind is MessageKind.COMPLETE:
            self._complete = status
        elif kind is MessageKind.UNEXPECTED_ERROR:
            logger.error(
                "Unexpected error from app: %s",
                status.message if status else None,
                extra=self._log_extra,
            )
            self._fire_error(
                (status.message if status else None) or UNEXPECTED_ERROR_MSG,
                broken=bool(msg.get("broken")),
            )
        elif kind is MessageKind.LOG:
            self._fire_log(msg)
            return
        elif kind is MessageKind.GENERATING and status is not None:
            self._fire_status(status)
            if data is not None and self.protocol in DIFF_PROTOCOLS and self.event_id:
                apply_diff_stream(self._client.pending_diff_streams, self.event_id, data)

        if kind not in (MessageKind.GENERATING, MessageKind.COMPLETE):
            return
        if data is not None:
            self._fire_data(data.get("data"))
            if self._complete is not None:
                self._fire_status(self._complete)
        elif kind is MessageKind.COMPLETE and status is not None:
            self._fire_status(status)

    # ── Transports ──────────────────────────────────────────

    async def _run(self) -> None:
        try:
            if self.protocol == "direct":
                await self._run_direct()
            elif self.protocol == "ws":
                await self._run_ws()
            elif self.protocol == "sse":
                await self._run_sse()
            elif self.protocol in SHARED_STREAM_PROTOCOLS:
                await self._run_shared_sse()
            else:
                self._fire_error(f"Unsupported protocol: {self.protocol}")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected client exception", extra=self._log_extra)
            self._fire_error(UNEXPECTED_ERROR_MSG)

    def _body(self, **extra: Any) -> dict[str, Any]:
        return self._envelope.to_body(self._client.session_hash, **extra)

    def _signed(self, url: str, params: Optional[dict[str, Any]] = None) -> str:
        query = dict(params or {})
        if self._client.jwt:
            query[SIGN_PARAM] = self._client.jwt
        return f"{url}?{urlencode(query)}" if query else url

    async def _run_direct(self) -> None:
        self._fire_status(Status(Stage.PENDING, queue=False))
        root = self._client.config.root
        url = f"{root}/{RUN_URL}/{self.endpoint.lstrip('/')}"
        output, status = await self._client.post_data(url, self._body())
        self.metrics.mark_joined()
        if status == 200:
            self._fire_data(output.get("data"))
            self._fire_status(Status(Stage.COMPLETE, queue=False, eta=output.get("average_duration")))
        else:
            self._fire_error(output.get("error"), queue=False)

    async def _run_ws(self) -> None:
        client = self._client
        config = client.config
        self._fire_status(Status(Stage.PENDING, queue=True))

        host = resolve_root(client.resolved.host, config.path, True)
        url = self._signed(f"{client.resolved.ws_protocol}://{host}/{QUEUE_JOIN_URL}")
        try:
            async with websockets.connect(
                url,
                additional_headers=client.headers,
                max_size=None,
            ) as ws:
                self._websocket = ws
                if config.semver < Version(LEGACY_WS_HASH_VERSION):
                    await ws.send(json.dumps({"hash": client.session_hash}))
                async for raw in ws:
                    msg = json.loads(raw)
                    parsed = handle_message(msg, client.last_status.get(self.fn_index))
                    if parsed.kind is MessageKind.HASH:
                        await ws.send(
                            json.dumps({"fn_index": self.fn_index, "session_hash": client.session_hash})
                        )
                        continue
                    if parsed.kind is MessageKind.SEND_DATA:
                        self.metrics.mark_joined()
                        await ws.send(json.dumps(self._body()))
                        continue
                    self._process(msg, parsed)
                    if self._done:
                        break
        except ConnectionClosedError as exc:
            logger.warning("WebSocket closed abnormally: %s", exc, extra=self._log_extra)
            self._fire_error(BROKEN_CONNECTION_MSG, broken=True)
        except (OSError, InvalidURI, InvalidHandshake, asyncio.TimeoutError) as exc:
            logger.warning("WebSocket connect failed: %s", exc, extra=self._log_extra)
            self._fire_error(BROKEN_CONNECTION_MSG, broken=True)
        finally:
            self._websocket = None
        if not self._done:
            self._fire_error(BROKEN_CONNECTION_MSG, broken=True)

    async def _run_sse(self) -> None:
        client = self._client
        root = client.config.root
        self._fire_status(Status(Stage.PENDING, queue=True))

        url = self._signed(
            f"{root}/{QUEUE_JOIN_URL}",
            {"fn_index": self.fn_index, "session_hash": client.session_hash},
        )
        try:
            async with aclosing(client.stream_events(url)) as events:
                async for raw in events:
                    msg = json.loads(raw)
                    parsed = handle_message(msg, client.last_status.get(self.fn_index))
                    if parsed.kind is MessageKind.HEARTBEAT:
                        continue
                    if parsed.kind is MessageKind.SEND_DATA:
                        self.event_id = msg.get("event_id")
                        self.metrics.mark_joined(self.event_id)
                        _, status = await client.post_data(
                            f"{root}/{QUEUE_DATA_URL}",
                            self._body(event_id=self.event_id),
                        )
                        if status != 200:
                            self._fire_error(BROKEN_CONNECTION_MSG)
                            break
                        continue
                    self._process(msg, parsed)
                    if self._done:
                        break
        except (aiohttp.ClientError, asyncio.TimeoutError, TransportError) as exc:
            logger.warning("Event stream failed: %s", exc, extra=self._log_extra)
            self._fire_error(BROKEN_CONNECTION_MSG, broken=True)
        if not self._done:
            self._fire_error(BROKEN_CONNECTION_MSG, broken=True)

    async def _run_shared_sse(self) -> None:
        client = self._client
        self._fire_status(Status(Stage.PENDING, queue=True))

        output, status = await client.post_data(
            f"{client.config.root}/{QUEUE_JOIN_URL}",
            self._body(),
        )
        if status == 503:
            self._fire_error(QUEUE_FULL_MSG)
            return
        if status != 200 or not output.get("event_id"):
            self._fire_error(output.get("error") or BROKEN_CONNECTION_MSG)
            return

        self.event_id = str(output["event_id"])
        self.metrics.mark_joined(self.event_id)
        logger.debug("Joined queue", extra=self._log_extra)
        client.register_event(self.event_id, self._on_stream_message)

    def _on_stream_message(self, msg: dict[str, Any]) -> None:
        """Shared-stream callback for this call's event id."""
        if self._done:
            return
        try:
            parsed = handle_message(msg, self._client.last_status.get(self.fn_index))
            if parsed.kind is MessageKind.HEARTBEAT:
                return
            self._process(msg, parsed)
        except Exception:
            logger.exception("Unexpected client exception", extra=self._log_extra)
            self._fire_error(UNEXPECTED_ERROR_MSG)
            if self.protocol in DIFF_PROTOCOLS:
                self._client.close_stream()

    # ── Cancellation ────────────────────────────────────────

    async def cancel(self) -> None:
        """Cancel the call and tell the server; always ends the sequence.

        A local ``complete`` status is produced first, so consumers see a
        terminal event whether or not the server acknowledges.
        """
        if self._done:
            return
        self._fire_status(Status(Stage.COMPLETE, queue=False))

        client = self._client
        root = client.config.root
        cancel_body: Optional[dict[str, Any]] = None
        if self.protocol in ("ws", "direct"):
            if self._websocket is not None:
                await self._websocket.close()
            reset_body: dict[str, Any] = {"fn_index": self.fn_index, "session_hash": client.session_hash}
        else:
            reset_body = {"event_id": self.event_id, "session_hash": client.session_hash}
            if self.event_id is not None:
                cancel_body = {
                    "event_id": self.event_id,
                    "session_hash": client.session_hash,
                    "fn_index": self.fn_index,
                }
        if self._task is not None and not self._task.done():
            self._task.cancel()

        if cancel_body is not None:
            _, status = await client.post_data(f"{root}/{CANCEL_URL}", cancel_body)
            if status != 200:
                logger.warning("Cancel request failed with HTTP %s", status, extra=self._log_extra)
        _, status = await client.post_data(f"{root}/{RESET_URL}", reset_body)
        if status != 200:
            logger.warning(RESET_FAILED_MSG, extra={**self._log_extra, "error_code": status})

    def abort(self) -> None:
        """End the call locally because the client is shutting down."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._fire_error(BROKEN_CONNECTION_MSG, broken=True)
