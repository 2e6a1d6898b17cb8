"""Server-sent-event decoding and generator diff application."""

from __future__ import annotations

import copy
from typing import Any, AsyncIterator, Sequence

import aiohttp


class EventStreamDecoder:
    """Incremental ``text/event-stream`` parser.

    Fed raw byte chunks, returns the ``data`` payload of every event
    completed by that chunk.  Multi-line ``data:`` fields are joined with
    newlines; comments and other fields are ignored.  Lines are split
    here rather than with ``StreamReader.readline`` so frames larger than
    the reader's line limit still decode.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._data: list[str] = []

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        events: list[str] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw, self._buffer = self._buffer[:idx], self._buffer[idx + 1 :]
            line = raw.rstrip(b"\r").decode("utf-8", errors="replace")
            event = self._line(line)
            if event is not None:
                events.append(event)
        return events

    def _line(self, line: str) -> str | None:
        if not line:
            if not self._data:
                return None
            data, self._data = "\n".join(self._data), []
            return data
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        return None


async def read_event_stream(response: aiohttp.ClientResponse) -> AsyncIterator[str]:
    """Yield each event's data string until the response body ends."""
    decoder = EventStreamDecoder()
    async for chunk in response.content.iter_any():
        for event in decoder.feed(chunk):
            yield event


# ── Diff application ────────────────────────────────────────


def _apply_edit(target: Any, path: Sequence[Any], action: str, value: Any) -> Any:
    if not path:
        if action == "replace":
            return value
        if action == "append":
            return target + value
        raise ValueError(f"Unsupported action: {action}")

    current = target
    for key in path[:-1]:
        current = current[key]

    last = path[-1]
    if action == "replace":
        current[last] = value
    elif action == "append":
        current[last] += value
    elif action == "add":
        if isinstance(current, list):
            current.insert(int(last), value)
        else:
            current[last] = value
    elif action == "delete":
        if isinstance(current, list):
            del current[int(last)]
        else:
            current.pop(last, None)
    else:
        raise ValueError(f"Unknown action: {action}")
    return target


def apply_diff(obj: Any, diff: Sequence[Sequence[Any]]) -> Any:
    """Apply ``[action, path, value]`` edits to ``obj`` in order.

    Nested containers are edited in place; the (possibly replaced) root
    is returned.
    """
    for action, path, value in diff:
        obj = _apply_edit(obj, path, action, value)
    return obj


def apply_diff_stream(store: dict[str, list[Any]], event_id: str, data: dict[str, Any]) -> None:
    """Resolve a generating frame's ``data`` against the running value.

    The first frame for ``event_id`` is the full value; later frames are
    per-output diffs.  ``data["data"]`` is rewritten with detached copies
    so already-emitted events never change under later edits.
    """
    outputs = data["data"]
    if event_id not in store:
        store[event_id] = copy.deepcopy(list(outputs))
        return
    current = store[event_id]
    for i, diff in enumerate(outputs):
        current[i] = apply_diff(current[i], diff)
        outputs[i] = copy.deepcopy(current[i])
