"""TTS adapter protocol: the interface speech backends implement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union, runtime_checkable


@dataclass
class Speaker:
    """A voice exposed by a backend.

    ``endpoint`` pins the app endpoint (name or index) that speaks with
    this voice; ``overrides`` are speaker-level synthesis options.
    """

    name: str
    endpoint: Optional[Union[str, int]] = None
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass
class SpeechResult:
    """Synthesised audio: a URL, plus the bytes once downloaded."""

    url: str
    speaker: str = ""
    audio: Optional[bytes] = None
    format: Optional[str] = None

    @property
    def downloaded(self) -> bool:
        return self.audio is not None


@runtime_checkable
class TTSAdapter(Protocol):
    """Protocol for text-to-speech adapters."""

    async def synthesize(
        self,
        text: str,
        backend: Any = None,
        speaker: Union[Speaker, str, None] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> SpeechResult:
        """Synthesise ``text`` with ``speaker`` and return where the audio lives.

        Args:
            text: Text to speak.
            backend: Backend-specific target description; adapters fall
                back to their configured default when omitted.
            speaker: Voice name or Speaker.
            overrides: Per-call synthesis options.
        """
        ...

    async def list_speakers(self, backend: Any = None) -> list[Speaker]:
        """Return the voices the backend offers."""
        ...

    async def close(self) -> None:
        """Close connections and release resources."""
        ...
