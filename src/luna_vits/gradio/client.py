"""Gradio client session: connection setup, shared event stream, calls."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import OrderedDict
from contextlib import aclosing
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Optional
from urllib.parse import urlencode

import aiohttp

from luna_vits.gradio.api_info import (
    ApiInfo,
    EndpointId,
    fetch_api_info,
    find_endpoint,
    render_api_info,
    transform_api_info,
)
from luna_vits.gradio.constants import (
    BROKEN_CONNECTION_MSG,
    MAX_FINISHED_EVENTS,
    MAX_PENDING_STREAM_EVENTS,
    MISSING_CREDENTIALS_MSG,
    QUEUE_DATA_URL,
    SIGN_PARAM,
)
from luna_vits.gradio.errors import (
    AuthError,
    ConfigError,
    InvalidArgumentError,
    PredictionError,
    TransportError,
)
from luna_vits.gradio.events import CallEnvelope, ClientOptions, EventType, Stage
from luna_vits.gradio.payload import Arguments, map_arguments, project_payload, skip_queue
from luna_vits.gradio.resolver import (
    ResolvedEndpoint,
    auth_headers,
    get_cookie_header,
    get_jwt,
    map_names_to_ids,
    parse_cookies,
    process_endpoint,
    resolve_config,
)
from luna_vits.gradio.schemas import AppConfig
from luna_vits.gradio.stream import read_event_stream
from luna_vits.gradio.submit import Submission
from luna_vits.logging import get_logger

logger = get_logger("gradio.client")

StreamCallback = Callable[[dict[str, Any]], None]


class GradioClient:
    """Session with one Gradio app.

    Use :meth:`connect` to build a ready client; it resolves the host,
    logs in when credentials are given, loads the config and introspects
    the API.  Calls go through :meth:`submit` (event sequence) or
    :meth:`predict` (final output only).
    """

    def __init__(
        self,
        app_reference: str,
        options: Optional[ClientOptions] = None,
        http: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.app_reference = app_reference
        options = options or ClientOptions()
        self.options = replace(
            options,
            events=list(options.events or [EventType.DATA]),
            headers=dict(options.headers),
        )

        self.session_hash = uuid.uuid4().hex[:11]
        self.resolved: Optional[ResolvedEndpoint] = None
        self.config: Optional[AppConfig] = None
        self.api_info: Optional[ApiInfo] = None
        self.api_map: dict[str, int] = {}
        self.jwt: Optional[str] = None
        self.cookies: Optional[str] = None
        self.last_status: dict[int, Stage] = {}

        # shared event stream (sse_v1 and later)
        self.pending_stream_messages: dict[str, list[dict[str, Any]]] = {}
        self.pending_diff_streams: dict[str, list[Any]] = {}
        self.event_callbacks: dict[str, StreamCallback] = {}
        self.unclosed_events: set[str] = set()
        self._finished_events: OrderedDict[str, None] = OrderedDict()
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._stream_open = False

        self._submissions: set[Submission] = set()
        self._session = http
        self._owns_session = http is None
        self._closed = False

    # ── Construction ────────────────────────────────────────

    @classmethod
    async def connect(
        cls,
        app_reference: str,
        options: Optional[ClientOptions] = None,
        http: Optional[aiohttp.ClientSession] = None,
    ) -> GradioClient:
        client = cls(app_reference, options, http)
        try:
            await client.init()
        except BaseException:
            await client.close()
            raise
        return client

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # no total timeout: event streams stay open for the whole call
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        return self._session

    @property
    def http(self) -> Optional[aiohttp.ClientSession]:
        return self._session

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent on every HTTP request to the app."""
        return {**auth_headers(self.options.hf_token, self.cookies), **self.options.headers}

    @property
    def log_extra(self) -> dict[str, Any]:
        return {"session_hash": self.session_hash, "app": self.app_reference}

    async def init(self) -> None:
        http = await self._ensure_session()
        self.resolved = await process_endpoint(http, self.app_reference, self.options.hf_token)

        if self.options.auth:
            cookie_header = await get_cookie_header(
                http,
                self.resolved.http_protocol,
                self.resolved.host,
                self.options.auth,
                self.options.hf_token,
            )
            if cookie_header:
                self.cookies = "; ".join(parse_cookies(cookie_header))

        self.config = await resolve_config(
            http, self.resolved.root, self.headers, has_auth=bool(self.options.auth)
        )
        logger.info(
            "Loaded config: version %s, protocol %s, %d dependencies",
            self.config.version,
            self.config.protocol,
            len(self.config.dependencies),
            extra={**self.log_extra, "protocol": self.config.protocol},
        )

        if self.config.auth_required:
            logger.warning("App requires login; calls are disabled", extra=self.log_extra)
            return

        if self.resolved.space_id and self.options.hf_token:
            self.jwt = await get_jwt(http, self.resolved.space_id, self.options.hf_token, self.cookies)

        self.api_map = map_names_to_ids(self.config.dependencies)
        await self.view_api()

    # ── Introspection ───────────────────────────────────────

    def _require_config(self) -> AppConfig:
        if self.config is None:
            raise ConfigError("Could not resolve app config")
        if self.config.auth_required:
            raise AuthError(MISSING_CREDENTIALS_MSG)
        return self.config

    async def view_api(self) -> ApiInfo:
        """Return the introspected endpoint schema (fetched once)."""
        config = self._require_config()
        if self.api_info is None:
            http = await self._ensure_session()
            raw = await fetch_api_info(http, config, self.headers)
            self.api_info = transform_api_info(raw, config, self.api_map)
            logger.debug(
                "API info: %d named, %d unnamed endpoints",
                len(self.api_info.named_endpoints),
                len(self.api_info.unnamed_endpoints),
                extra=self.log_extra,
            )
        return self.api_info

    def render_api(self, all_endpoints: bool = False) -> str:
        if self.api_info is None:
            return ""
        return render_api_info(self.api_info, all_endpoints)

    # ── HTTP helpers ────────────────────────────────────────

    async def post_data(
        self,
        url: str,
        body: Any,
        headers: Optional[dict[str, str]] = None,
    ) -> tuple[dict[str, Any], int]:
        """POST JSON and return ``(body, status)``.

        Network failures come back as ``({"error": ...}, 500)`` rather
        than raising.
        """
        http = await self._ensure_session()
        request_headers = {"Content-Type": "application/json", **self.headers, **(headers or {})}
        try:
            async with http.post(url, json=body, headers=request_headers) as resp:
                status = resp.status
                try:
                    output = await resp.json(content_type=None)
                except ValueError as exc:
                    return {"error": f"Could not parse server response: {exc}"}, 500
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("POST %s failed: %s", url, exc, extra=self.log_extra)
            return {"error": BROKEN_CONNECTION_MSG}, 500
        if not isinstance(output, dict):
            output = {"data": output} if status == 200 else {"error": str(output)}
        return output, status

    async def stream_events(self, url: str) -> AsyncIterator[str]:
        """Open an event-stream GET and yield each event's data string."""
        http = await self._ensure_session()
        request_headers = {"Accept": "text/event-stream", **self.headers}
        async with http.get(url, headers=request_headers) as resp:
            if resp.status != 200:
                raise TransportError(f"Event stream returned HTTP {resp.status}")
            async for data in read_event_stream(resp):
                yield data

    # ── Shared event stream ─────────────────────────────────

    def register_event(self, event_id: str, callback: StreamCallback) -> None:
        """Attach ``callback`` to ``event_id`` and replay buffered frames.

        Registration and replay happen without yielding to the loop, so
        no frame for the id can slip in between.
        """
        self._finished_events.pop(event_id, None)
        self.event_callbacks[event_id] = callback
        self.unclosed_events.add(event_id)
        for msg in self.pending_stream_messages.pop(event_id, []):
            if event_id not in self.event_callbacks:
                break
            callback(msg)
        if not self._stream_open and event_id in self.event_callbacks:
            self.open_stream()

    def unregister_event(self, event_id: str) -> None:
        self.event_callbacks.pop(event_id, None)
        self.pending_diff_streams.pop(event_id, None)
        self.pending_stream_messages.pop(event_id, None)
        self.unclosed_events.discard(event_id)
        self._finished_events[event_id] = None
        self._finished_events.move_to_end(event_id)
        while len(self._finished_events) > MAX_FINISHED_EVENTS:
            self._finished_events.popitem(last=False)

    def open_stream(self) -> None:
        if self._stream_open or self._closed:
            return
        self._stream_open = True
        self._stream_task = asyncio.create_task(self._run_stream(), name="gradio-stream")

    def close_stream(self) -> None:
        self._stream_open = False
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        self._stream_task = None

    def _stream_url(self) -> str:
        query = {"session_hash": self.session_hash}
        if self.jwt:
            query[SIGN_PARAM] = self.jwt
        return f"{self.config.root}/{QUEUE_DATA_URL}?{urlencode(query)}"

    def dispatch_stream_message(self, msg: dict[str, Any]) -> None:
        """Route one shared-stream frame to its call."""
        event_id = msg.get("event_id")
        if not event_id:
            for callback in list(self.event_callbacks.values()):
                callback(msg)
            return

        callback = self.event_callbacks.get(event_id)
        if callback is not None:
            if msg.get("msg") == "process_completed":
                self.unclosed_events.discard(event_id)
            callback(msg)
        elif event_id in self._finished_events:
            logger.debug(
                "Dropping late frame %s",
                msg.get("msg"),
                extra={**self.log_extra, "event_id": event_id},
            )
        else:
            self.pending_stream_messages.setdefault(event_id, []).append(msg)
            while len(self.pending_stream_messages) > MAX_PENDING_STREAM_EVENTS:
                stale = next(iter(self.pending_stream_messages))
                del self.pending_stream_messages[stale]
                logger.debug(
                    "Dropping frames buffered for unregistered event",
                    extra={**self.log_extra, "event_id": stale},
                )

    def _fail_pending(self) -> None:
        for callback in list(self.event_callbacks.values()):
            callback({"msg": "unexpected_error", "message": BROKEN_CONNECTION_MSG, "broken": True})

    async def _run_stream(self) -> None:
        received = 0
        try:
            async with aclosing(self.stream_events(self._stream_url())) as events:
                async for raw in events:
                    try:
                        msg = json.loads(raw)
                    except ValueError:
                        logger.warning("Malformed stream frame: %.200s", raw, extra=self.log_extra)
                        continue
                    received += 1
                    if msg.get("msg") == "close_stream":
                        logger.debug("Server closed the event stream", extra=self.log_extra)
                        break
                    self.dispatch_stream_message(msg)
        except asyncio.CancelledError:
            self._stream_open = False
            self._fail_pending()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, TransportError) as exc:
            logger.warning("Event stream failed: %s", exc, extra=self.log_extra)
            received = 0

        self._stream_open = False
        self._stream_task = None
        if not self.event_callbacks:
            return
        if received and not self._closed:
            self.open_stream()
        else:
            self._fail_pending()

    # ── Calls ───────────────────────────────────────────────

    def discard_submission(self, submission: Submission) -> None:
        self._submissions.discard(submission)

    def submit(
        self,
        endpoint: EndpointId,
        args: Arguments = None,
        event_data: Any = None,
        trigger_id: Optional[int] = None,
        all_events: bool = False,
    ) -> Submission:
        """Start a call and return its event sequence.

        Argument problems raise InvalidArgumentError here, before any
        network activity.  Everything after that arrives as events.
        """
        config = self._require_config()
        if self.api_info is None:
            raise ConfigError("No API found")
        if self._closed:
            raise TransportError("Client is closed")

        fn_index, endpoint_info, dependency = find_endpoint(
            self.api_info, endpoint, self.api_map, config
        )
        if fn_index is None:
            raise InvalidArgumentError(
                "There is no endpoint matching that name of fn_index matching that number."
            )

        resolved = map_arguments(args, endpoint_info)
        envelope = CallEnvelope(
            data=project_payload(resolved, dependency, config.components, "input", True),
            fn_index=fn_index,
            event_data=event_data,
            trigger_id=trigger_id,
        )
        label = "/predict" if isinstance(endpoint, int) else endpoint
        submission = Submission(
            self,
            label,
            fn_index,
            dependency,
            envelope,
            direct=skip_queue(fn_index, config),
            all_events=all_events,
        )
        self._submissions.add(submission)
        submission.start()
        return submission

    async def predict(
        self,
        endpoint: EndpointId,
        args: Arguments = None,
        event_data: Any = None,
    ) -> list[Any]:
        """Run a call to completion and return its final output list.

        Raises PredictionError when the call ends in an error status or
        finishes without producing data.  If the awaiting task is
        cancelled (e.g. by ``asyncio.wait_for``) the call is cancelled
        server-side too.
        """
        submission = self.submit(endpoint, args, event_data, all_events=True)
        result: Optional[list[Any]] = None
        has_data = False
        complete = False

        try:
            async for event in submission:
                if event.type is EventType.DATA:
                    result, has_data = event.data or [], True
                    if complete:
                        return result
                elif event.type is EventType.STATUS and event.status is not None:
                    if event.status.stage is Stage.ERROR:
                        raise PredictionError(event.status.message or "Prediction failed", event.status)
                    if event.status.stage is Stage.COMPLETE:
                        complete = True
                        if has_data:
                            return result
        finally:
            if not submission.done:
                await asyncio.shield(submission.cancel())

        raise PredictionError("Call finished without returning data")

    async def close(self) -> None:
        """Stop the shared stream, abort in-flight calls, release HTTP."""
        self._closed = True
        for submission in list(self._submissions):
            submission.abort()
        self.close_stream()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("Gradio client closed", extra=self.log_extra)

    async def __aenter__(self) -> GradioClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


async def connect(
    app_reference: str,
    options: Optional[ClientOptions] = None,
    http: Optional[aiohttp.ClientSession] = None,
) -> GradioClient:
    """Build and initialise a GradioClient for ``app_reference``."""
    return await GradioClient.connect(app_reference, options, http)
