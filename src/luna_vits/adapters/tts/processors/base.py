"""Gradio backend description and the processor registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from luna_vits.adapters.tts.base import Speaker
from luna_vits.config import Settings
from luna_vits.gradio.api_info import EndpointInfo
from luna_vits.gradio.client import GradioClient


class GradioBackend(BaseModel):
    """One Gradio-hosted voice app as seen by the speaker catalog."""

    model_config = ConfigDict(extra="ignore")

    url: str
    hf_token: str = ""
    auth: Optional[tuple[str, str]] = None
    endpoint: Optional[Union[int, str]] = None
    processor: str = "bert-vits2"
    with_null_state: bool = False
    auto_pull_speakers: bool = True
    speakers: list[str] = Field(default_factory=list)
    defaults: dict[str, Any] = Field(default_factory=dict)
    speaker_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> GradioBackend:
        return cls(
            url=settings.gradio_url,
            hf_token=settings.gradio_hf_token,
            auth=settings.gradio_auth,
            endpoint=settings.gradio_endpoint_id,
            processor=settings.gradio_processor,
            with_null_state=settings.gradio_with_null_state,
            defaults={"language": settings.default_language},
        )


@dataclass
class Discovery:
    """What a processor learned about an app's speech endpoint."""

    endpoint: Union[str, int]
    info: EndpointInfo
    speakers: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)


class GradioProcessor(Protocol):
    """Knows how one family of Gradio TTS apps is called."""

    type: str

    async def discover(self, client: GradioClient, backend: GradioBackend) -> Discovery:
        ...

    def build_arguments(
        self,
        discovery: Discovery,
        backend: GradioBackend,
        speaker: Speaker,
        text: str,
        overrides: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        ...


class ProcessorRegistry:
    """Explicit processor lookup, built once at startup."""

    def __init__(self, processors: Optional[list[GradioProcessor]] = None) -> None:
        self._processors: dict[str, GradioProcessor] = {}
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: GradioProcessor) -> None:
        self._processors[processor.type] = processor

    def get(self, type_: str) -> GradioProcessor:
        try:
            return self._processors[type_]
        except KeyError:
            raise KeyError(
                f"No Gradio processor for {type_!r}; known: {sorted(self._processors)}"
            ) from None

    @property
    def types(self) -> list[str]:
        return sorted(self._processors)
