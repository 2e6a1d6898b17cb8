"""Processor for Bert-VITS2 style Gradio apps.

Finds the speech endpoint, reads the speaker/language choices off its
parameters, and lays out the argument list for a synthesis call.
Machine-readable ``parameter_name`` wins; label matching is the
fallback for apps that only expose display labels.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from luna_vits.adapters.tts.base import Speaker
from luna_vits.adapters.tts.processors.base import Discovery, GradioBackend
from luna_vits.gradio.api_info import ApiInfo, EndpointInfo, ParameterInfo
from luna_vits.gradio.client import GradioClient
from luna_vits.gradio.errors import SchemaError
from luna_vits.logging import get_logger

logger = get_logger("tts.bert_vits")

DEFAULT_ENDPOINT = "/tts_fn"
RE_OPTIONS = re.compile(r"Option from: \[(.*?)\]")
RE_QUOTED = re.compile(r"'([^']+)'")

SPEAKER_LABELS = ("选择说话人", "Speaker")
LANGUAGE_LABELS = ("选择语言", "Language")
SENTENCE_SPLIT_LABEL = "按句切分"

OVERRIDABLE = (
    "sdp_ratio",
    "noise",
    "noise_w",
    "length_scale",
    "length",
    "text_prompt",
    "style_text",
    "style_weight",
    "emotion",
    "prompt_mode",
    "language",
)


class BertVits2Options(BaseModel):
    """Synthesis options for one Bert-VITS2 call."""

    model_config = ConfigDict(extra="ignore")

    text: str = ""
    speaker: str = ""
    language: str = "ZH"
    sdp_ratio: float = 0.3
    noise_scale: float = 0.4
    noise_scale_w: float = 0.8
    length_scale: float = 1.0
    noise: Optional[float] = None
    noise_w: Optional[float] = None
    length: Optional[float] = None
    emotion: Union[str, int] = "Happy"
    prompt_mode: str = "Text prompt"
    text_prompt: Optional[str] = None
    style_text: str = "Hello!!"
    style_weight: float = 0.0

    @property
    def effective_noise(self) -> float:
        return self.noise if self.noise is not None else self.noise_scale

    @property
    def effective_noise_w(self) -> float:
        return self.noise_w if self.noise_w is not None else self.noise_scale_w

    @property
    def effective_length(self) -> float:
        return self.length if self.length is not None else self.length_scale


def resolve_options(
    defaults: Optional[Mapping[str, Any]] = None,
    speaker_overrides: Optional[Mapping[str, Any]] = None,
    call_overrides: Optional[Mapping[str, Any]] = None,
    fixed: Optional[Mapping[str, Any]] = None,
) -> BertVits2Options:
    """Merge option layers: defaults, then speaker, then call, then fixed.

    Speaker and call layers may only touch the overridable option keys;
    ``None`` values never override.  ``fixed`` carries text, speaker and
    an explicit language.
    """
    merged: dict[str, Any] = BertVits2Options().model_dump()
    merged.update({k: v for k, v in (defaults or {}).items() if v is not None})
    for layer in (speaker_overrides, call_overrides):
        for key, value in (layer or {}).items():
            if key in OVERRIDABLE and value is not None:
                merged[key] = value
    merged.update({k: v for k, v in (fixed or {}).items() if v is not None})
    return BertVits2Options.model_validate(merged)


def parse_option_list(description: Optional[str]) -> list[str]:
    """Extract choices from an ``Option from: [('a', 'a'), ...]`` description."""
    if not description:
        return []
    match = RE_OPTIONS.search(description)
    if not match:
        return []
    seen: dict[str, None] = {}
    for value in RE_QUOTED.findall(match.group(1)):
        seen.setdefault(value.strip(), None)
    return list(seen)


def _choices(param: Optional[ParameterInfo]) -> list[str]:
    if param is None:
        return []
    if param.enum:
        return [str(v) for v in param.enum]
    return parse_option_list(param.description)


def find_parameter(info: EndpointInfo, name: str, labels: tuple[str, ...]) -> Optional[ParameterInfo]:
    for param in info.parameters:
        if param.parameter_name == name or any(label in param.label for label in labels):
            return param
    return None


def _is_speech_endpoint(info: EndpointInfo) -> bool:
    has_speaker = find_parameter(info, "speaker", SPEAKER_LABELS) is not None
    splits = any(SENTENCE_SPLIT_LABEL in p.label for p in info.parameters)
    return has_speaker and not splits


def find_speech_endpoint(
    api_info: ApiInfo,
    configured: Optional[Union[str, int]] = None,
) -> tuple[Union[str, int], EndpointInfo]:
    """Pick the endpoint to synthesise with.

    The configured endpoint (default ``/tts_fn``) is used when present;
    otherwise the first named, then unnamed, endpoint that takes a speaker
    and does not split sentences.
    """
    wanted = DEFAULT_ENDPOINT if configured is None else configured
    if isinstance(wanted, str) and not wanted.startswith("/"):
        wanted = f"/{wanted}"

    if isinstance(wanted, int):
        info = api_info.unnamed_endpoints.get(wanted)
    else:
        info = api_info.named_endpoints.get(wanted)
    if info is not None:
        return wanted, info

    for name, info in api_info.named_endpoints.items():
        if _is_speech_endpoint(info):
            return name, info
    for index, info in api_info.unnamed_endpoints.items():
        if _is_speech_endpoint(info):
            return index, info

    raise SchemaError(f"No speech endpoint found (looked for {wanted!r})")


def _from_name(options: BertVits2Options, name: Optional[str]) -> tuple[bool, Any]:
    values: dict[str, Any] = {
        "text": options.text,
        "speaker": options.speaker,
        "sdp_ratio": options.sdp_ratio,
        "noise": options.effective_noise,
        "noise_scale": options.effective_noise,
        "noise_w": options.effective_noise_w,
        "noise_scale_w": options.effective_noise_w,
        "length": options.effective_length,
        "length_scale": options.effective_length,
        "language": options.language,
        "emotion": options.emotion,
        "prompt_mode": options.prompt_mode,
        "text_prompt": options.text_prompt or "Happy",
        "style_text": options.style_text,
        "style_weight": options.style_weight,
        "reference_audio": None,
    }
    if name is not None and name in values:
        return True, values[name]
    return False, None


def _from_label(options: BertVits2Options, label: str) -> tuple[bool, Any]:
    if label == "输入文本内容" or label.lower() == "text":
        return True, options.text
    if label in ("选择说话人", "Speaker"):
        return True, options.speaker
    if label == "SDP Ratio" or "DP混合比" in label:
        return True, options.sdp_ratio
    if label == "Noise" or "感情" in label:
        return True, options.effective_noise
    if label == "Noise_W" or "音素长度" in label:
        return True, options.effective_noise_w
    if label == "Length" or "语速" in label or "生成长度" in label:
        return True, options.effective_length
    if label == "Language" or "选择语言" in label:
        return True, options.language
    if label == "Emotion":
        return True, options.emotion
    if label == "Prompt Mode":
        return True, options.prompt_mode
    if label == "Text prompt":
        return True, options.text_prompt or "Happy"
    if label == "辅助文本":
        return True, ""
    if label == "Style Text":
        return True, options.style_text
    if label == "Weight":
        return True, options.style_weight
    if label == "Audio prompt":
        return True, None
    return False, None


def map_payload(info: EndpointInfo, options: BertVits2Options) -> list[Any]:
    """One value per declared parameter, in order."""
    payload: list[Any] = []
    for param in info.parameters:
        found, value = _from_name(options, param.parameter_name)
        if not found:
            found, value = _from_label(options, param.label)
        if not found:
            value = param.parameter_default if param.parameter_has_default else None
        payload.append(value)
    return payload


class BertVits2Processor:
    type = "bert-vits2"

    async def discover(self, client: GradioClient, backend: GradioBackend) -> Discovery:
        api_info = await client.view_api()
        endpoint, info = find_speech_endpoint(api_info, backend.endpoint)

        speakers = _choices(find_parameter(info, "speaker", SPEAKER_LABELS))
        languages = [
            value.upper()
            for value in _choices(find_parameter(info, "language", LANGUAGE_LABELS))
            if "mix" not in value
        ]
        logger.info(
            "Discovered %d speakers, languages %s",
            len(speakers),
            languages,
            extra={"app": backend.url, "endpoint": str(endpoint)},
        )
        return Discovery(endpoint=endpoint, info=info, speakers=speakers, languages=languages)

    def build_arguments(
        self,
        discovery: Discovery,
        backend: GradioBackend,
        speaker: Speaker,
        text: str,
        overrides: Optional[dict[str, Any]] = None,
    ) -> list[Any]:
        speaker_layer = {**backend.speaker_overrides.get(speaker.name, {}), **speaker.overrides}
        call_language = (overrides or {}).get("language")
        options = resolve_options(
            backend.defaults,
            speaker_layer,
            overrides,
            {"text": text, "speaker": speaker.name, "language": call_language},
        )
        return map_payload(discovery.info, options)
