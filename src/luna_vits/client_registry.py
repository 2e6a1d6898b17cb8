"""Client registry: one connected GradioClient per app URL."""

from __future__ import annotations

import asyncio
import functools
from typing import Optional

from luna_vits.gradio.client import GradioClient
from luna_vits.gradio.events import ClientOptions
from luna_vits.logging import get_logger

logger = get_logger("client_registry")


class ClientRegistry:
    """Keeps Gradio sessions alive across calls, with a hard cap.

    Keyed by app URL.  Each client owns its own HTTP session and shared
    event stream; nothing is shared between entries.
    """

    def __init__(self, max_clients: int = 8) -> None:
        self._max = max_clients
        self._clients: dict[str, GradioClient] = {}
        self._connecting: dict[str, asyncio.Task[GradioClient]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(url: str) -> str:
        return url.strip().rstrip("/")

    @property
    def active_count(self) -> int:
        return len(self._clients)

    async def get_or_create(self, url: str, options: Optional[ClientOptions] = None) -> GradioClient:
        """Return the client for ``url``, connecting it on first use.  Raises if at capacity.

        The lock only guards bookkeeping; the connect itself runs as a
        task shared by every caller asking for the same URL meanwhile.
        """
        key = self._key(url)
        async with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            task = self._connecting.get(key)
            if task is None:
                if len(self._clients) + len(self._connecting) >= self._max:
                    raise RuntimeError(
                        f"Max Gradio clients ({self._max}) reached. "
                        "Close an app before connecting another."
                    )
                task = asyncio.create_task(GradioClient.connect(url, options), name=f"gradio-connect-{key}")
                task.add_done_callback(functools.partial(self._on_connected, key))
                self._connecting[key] = task

        return await asyncio.shield(task)

    def _on_connected(self, key: str, task: asyncio.Task[GradioClient]) -> None:
        # a task no longer tracked was dropped by remove() or close_all()
        if self._connecting.get(key) is not task:
            return
        del self._connecting[key]
        if task.cancelled() or task.exception() is not None:
            return
        client = task.result()
        self._clients[key] = client
        logger.info(
            "Client connected: %s",
            key,
            extra={
                "session_hash": client.session_hash,
                "app": key,
                "event": "client_created",
            },
        )

    @staticmethod
    async def _abandon(tasks: list[asyncio.Task[GradioClient]]) -> list[GradioClient]:
        """Cancel in-flight connects; return clients that finished anyway."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [r for r in results if not isinstance(r, BaseException)]

    async def get(self, url: str) -> Optional[GradioClient]:
        """Return the connected client for ``url``, or None."""
        return self._clients.get(self._key(url))

    async def remove(self, url: str) -> None:
        """Close and deregister the client, abandoning an in-flight connect."""
        async with self._lock:
            key = self._key(url)
            client = self._clients.pop(key, None)
            task = self._connecting.pop(key, None)
        for late in await self._abandon([task] if task else []):
            await late.close()
        if client:
            await client.close()
            logger.info(
                "Client removed: %s",
                key,
                extra={
                    "session_hash": client.session_hash,
                    "app": key,
                    "event": "client_removed",
                },
            )

    async def close_all(self) -> None:
        """Shut down all clients (for graceful process exit)."""
        async with self._lock:
            clients = list(self._clients.values())
            tasks = list(self._connecting.values())
            self._clients.clear()
            self._connecting.clear()
        clients.extend(await self._abandon(tasks))
        for c in clients:
            await c.close()
        logger.info("All clients closed", extra={"event": "all_clients_closed"})
