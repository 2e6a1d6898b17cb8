"""Gradio TTS adapter.

Routes text to a Gradio-hosted voice app: picks the app's speech
endpoint through a processor, calls it with ``predict`` and turns the
returned file descriptor into an audio URL.
"""

from __future__ import annotations

import asyncio
import mimetypes
from typing import Any, Optional, Union

import aiohttp

from luna_vits.adapters.tts.base import Speaker, SpeechResult
from luna_vits.adapters.tts.processors.base import (
    Discovery,
    GradioBackend,
    ProcessorRegistry,
)
from luna_vits.adapters.tts.processors.bert_vits import BertVits2Processor, find_speech_endpoint
from luna_vits.client_registry import ClientRegistry
from luna_vits.config import Settings
from luna_vits.gradio.client import GradioClient
from luna_vits.gradio.constants import FILE_URL
from luna_vits.gradio.errors import GradioClientError
from luna_vits.gradio.events import ClientOptions
from luna_vits.logging import get_logger

logger = get_logger("tts.gradio")


class SynthesisError(Exception):
    """Synthesis failed or produced no usable audio."""


def default_processors() -> ProcessorRegistry:
    return ProcessorRegistry([BertVits2Processor()])


def audio_url(output: list[Any], base_url: str) -> str:
    """Find the audio file descriptor in a predict result and return its URL.

    Descriptors resolve by ``url``, else ``path``/``name`` served from
    ``<app>/file=``.
    """
    for item in output:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("url"), str) and item["url"]:
            return item["url"]
        file_path = item.get("path") or item.get("name")
        if isinstance(file_path, str) and file_path:
            return f"{base_url.rstrip('/')}/{FILE_URL}{file_path}"
    raise SynthesisError(f"Invalid response format: {output!r:.300}")


class GradioTTSAdapter:
    """TTS adapter over Gradio voice apps.

    Implements the TTSAdapter protocol.  Clients are kept per app URL in
    a ClientRegistry; endpoint discovery is cached per URL.
    """

    def __init__(
        self,
        settings: Settings,
        processors: Optional[ProcessorRegistry] = None,
        clients: Optional[ClientRegistry] = None,
    ) -> None:
        self._settings = settings
        self._backend = GradioBackend.from_settings(settings)
        self._processors = processors or default_processors()
        self._clients = clients or ClientRegistry(max_clients=settings.max_clients)
        self._discoveries: dict[str, Discovery] = {}
        self._max_input = settings.max_input_length

    @property
    def backend(self) -> GradioBackend:
        return self._backend

    async def _client(self, backend: GradioBackend) -> GradioClient:
        options = ClientOptions(
            hf_token=backend.hf_token,
            auth=backend.auth,
            with_null_state=backend.with_null_state,
            metrics_enabled=self._settings.metrics_enabled,
        )
        return await self._clients.get_or_create(backend.url, options)

    async def _discover(self, client: GradioClient, backend: GradioBackend) -> Discovery:
        discovery = self._discoveries.get(backend.url)
        if discovery is None:
            processor = self._processors.get(backend.processor)
            discovery = await processor.discover(client, backend)
            self._discoveries[backend.url] = discovery
        return discovery

    async def list_speakers(self, backend: Optional[GradioBackend] = None) -> list[Speaker]:
        backend = backend or self._backend
        if not backend.auto_pull_speakers:
            return [Speaker(name=name, endpoint=backend.endpoint) for name in backend.speakers]
        try:
            client = await self._client(backend)
            discovery = await self._discover(client, backend)
        except GradioClientError as exc:
            logger.error("Speaker discovery failed: %s", exc, extra={"app": backend.url})
            raise SynthesisError(str(exc)) from exc
        return [Speaker(name=name, endpoint=discovery.endpoint) for name in discovery.speakers]

    async def languages(self, backend: Optional[GradioBackend] = None) -> list[str]:
        backend = backend or self._backend
        client = await self._client(backend)
        return (await self._discover(client, backend)).languages

    async def synthesize(
        self,
        text: str,
        backend: Optional[GradioBackend] = None,
        speaker: Union[Speaker, str, None] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> SpeechResult:
        """Synthesise ``text`` and return the audio URL."""
        backend = backend or self._backend
        if len(text) > self._max_input:
            raise SynthesisError(
                f"Input is {len(text)} characters; the limit is {self._max_input}."
            )
        if speaker is None:
            speakers = await self.list_speakers(backend)
            if not speakers:
                raise SynthesisError(f"No speakers available at {backend.url}")
            speaker = speakers[0]
        elif isinstance(speaker, str):
            speaker = Speaker(name=speaker)

        try:
            client = await self._client(backend)
            discovery = await self._discover(client, backend)
            if speaker.endpoint is not None and speaker.endpoint != discovery.endpoint:
                endpoint, info = find_speech_endpoint(await client.view_api(), speaker.endpoint)
                discovery = Discovery(endpoint=endpoint, info=info)

            processor = self._processors.get(backend.processor)
            args = processor.build_arguments(discovery, backend, speaker, text, overrides)
            output = await client.predict(discovery.endpoint, args)
        except GradioClientError as exc:
            logger.error(
                "Gradio synthesis failed: %s",
                exc,
                extra={"app": backend.url, "endpoint": str(speaker.endpoint or "")},
            )
            raise SynthesisError(str(exc)) from exc

        url = audio_url(output, client.config.root)
        logger.info(
            "Synthesised %d chars with %s",
            len(text),
            speaker.name,
            extra={"app": backend.url, "session_hash": client.session_hash},
        )
        return SpeechResult(url=url, speaker=speaker.name)

    async def download(self, result: SpeechResult, backend: Optional[GradioBackend] = None) -> SpeechResult:
        """Fetch the audio bytes behind ``result.url``."""
        backend = backend or self._backend
        client = await self._client(backend)
        http = client.http
        if http is None or http.closed:
            raise SynthesisError("Client is closed")

        try:
            async with http.get(result.url, headers=client.headers) as resp:
                if resp.status != 200:
                    raise SynthesisError(f"Audio download failed with HTTP {resp.status}")
                result.audio = await resp.read()
                content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SynthesisError(f"Audio download failed: {exc}") from exc

        suffix = mimetypes.guess_extension(content_type) if content_type else None
        if suffix is None:
            name = result.url.rsplit("/", 1)[-1]
            suffix = name.rsplit(".", 1)[-1] if "." in name else None
        result.format = suffix.lstrip(".") if suffix else None
        return result

    async def close(self) -> None:
        await self._clients.close_all()
        self._discoveries.clear()
        logger.info("Gradio TTS adapter closed")
