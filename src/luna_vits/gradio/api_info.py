"""API schema introspection: fetch, normalise and render endpoint signatures."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

import aiohttp
from packaging.version import Version

from luna_vits.gradio.constants import (
    API_INFO_ERROR_MSG,
    API_INFO_URL,
    BROKEN_CONNECTION_MSG,
    LEGACY_API_INFO_VERSION,
    SPACE_FETCHER_URL,
    STATE_COMPONENT,
)
from luna_vits.gradio.errors import SchemaError
from luna_vits.gradio.resolver import join_urls
from luna_vits.gradio.schemas import AppConfig, Dependency
from luna_vits.logging import get_logger

logger = get_logger("gradio.api_info")

EndpointId = Union[str, int]


@dataclass(frozen=True)
class ParameterInfo:
    """One parameter or return slot of an endpoint."""

    label: str = ""
    parameter_name: Optional[str] = None
    parameter_has_default: bool = False
    parameter_default: Any = None
    component: str = ""
    serializer: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    enum: tuple[Any, ...] = ()
    example: Any = None
    hidden: bool = False


@dataclass(frozen=True)
class EndpointInfo:
    parameters: tuple[ParameterInfo, ...] = ()
    returns: tuple[ParameterInfo, ...] = ()
    generator: bool = False
    cancel: bool = False

    def parameter(self, name: str) -> Optional[ParameterInfo]:
        for param in self.parameters:
            if param.parameter_name == name:
                return param
        return None


@dataclass(frozen=True)
class ApiInfo:
    named_endpoints: Mapping[str, EndpointInfo] = field(default_factory=dict)
    unnamed_endpoints: Mapping[int, EndpointInfo] = field(default_factory=dict)


class ApiInfoShape(Enum):
    FLAT = "flat"
    NESTED = "nested"


# ── Fetching ────────────────────────────────────────────────


async def fetch_api_info(
    http: aiohttp.ClientSession,
    config: AppConfig,
    headers: dict[str, str],
) -> dict[str, Any]:
    """Fetch the raw API description for ``config``.

    Apps older than 3.30 have no ``/info`` route; their config is posted
    to the hosted fetcher service instead.
    """
    request_headers = {"Content-Type": "application/json", **headers}
    try:
        if config.semver < Version(LEGACY_API_INFO_VERSION):
            body = {"serialize": False, "config": json.dumps(config.model_dump(mode="json"))}
            ctx = http.post(SPACE_FETCHER_URL, json=body, headers=request_headers)
        else:
            ctx = http.get(join_urls(config.root, API_INFO_URL), headers=request_headers)
        async with ctx as resp:
            if resp.status != 200:
                raise SchemaError(API_INFO_ERROR_MSG + BROKEN_CONNECTION_MSG)
            payload = await resp.json(content_type=None)
    except asyncio.CancelledError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        raise SchemaError(API_INFO_ERROR_MSG + str(exc)) from exc
    return unwrap_api_info(payload)


def detect_shape(payload: Any) -> ApiInfoShape:
    if not isinstance(payload, dict):
        raise SchemaError(API_INFO_ERROR_MSG + "response is not an object")
    if isinstance(payload.get("api"), dict):
        return ApiInfoShape.NESTED
    if "named_endpoints" in payload or "unnamed_endpoints" in payload:
        return ApiInfoShape.FLAT
    raise SchemaError(API_INFO_ERROR_MSG + "no endpoints in response")


def unwrap_api_info(payload: Any) -> dict[str, Any]:
    """Normalise a flat or ``{"api": ...}``-nested response to the flat shape."""
    if detect_shape(payload) is ApiInfoShape.NESTED:
        payload = payload["api"]
    named = payload.get("named_endpoints") or {}
    unnamed = payload.get("unnamed_endpoints") or {}
    if not isinstance(named, dict) or not isinstance(unnamed, dict):
        raise SchemaError(API_INFO_ERROR_MSG + "endpoint tables must be objects")
    return {"named_endpoints": named, "unnamed_endpoints": unnamed}


# ── Transformation ──────────────────────────────────────────


def get_type(
    type_info: Optional[dict[str, Any]],
    component: str,
    serializer: Optional[str],
    signature_type: str,
) -> Optional[str]:
    """Map a server type/serializer description to a Python type string.

    Returns None for combinations that are not recognised.
    """
    json_type = (type_info or {}).get("type")
    if json_type == "string":
        return "str"
    if json_type == "boolean":
        return "bool"
    if json_type == "number":
        return "float"

    is_param = signature_type == "parameter"
    if serializer in ("JSONSerializable", "StringSerializable"):
        return "Any"
    if serializer == "ListStringSerializable":
        return "list[str]"
    if component == "Image":
        return "bytes | str" if is_param else "str"
    if serializer == "FileSerializable":
        if json_type == "array":
            return "list[bytes | str]" if is_param else "list[FileData]"
        return "bytes | str" if is_param else "FileData"
    if serializer == "GallerySerializable":
        if is_param:
            return "list[tuple[bytes | str, str | None]]"
        return "list[tuple[FileData, str | None]]"
    return None


def get_description(type_info: Optional[dict[str, Any]], serializer: Optional[str]) -> Optional[str]:
    if serializer == "GallerySerializable":
        return "array of [file, label] tuples"
    if serializer == "ListStringSerializable":
        return "array of strings"
    if serializer == "FileSerializable":
        return "array of files or single file"
    return (type_info or {}).get("description")


def _parameter(raw: dict[str, Any], signature_type: str) -> ParameterInfo:
    type_info = raw.get("type") if isinstance(raw.get("type"), dict) else None
    component = raw.get("component") or ""
    serializer = raw.get("serializer")
    enum = (type_info or {}).get("enum") or ()
    return ParameterInfo(
        label=raw.get("label") or "",
        parameter_name=raw.get("parameter_name"),
        parameter_has_default=bool(raw.get("parameter_has_default", False)),
        parameter_default=raw.get("parameter_default"),
        component=component,
        serializer=serializer,
        type=get_type(type_info, component, serializer, signature_type),
        description=get_description(type_info, serializer),
        enum=tuple(enum),
        example=raw.get("example_input", raw.get("example")),
        hidden=bool(raw.get("hidden", False)),
    )


def _state_parameter() -> dict[str, Any]:
    return {
        "component": STATE_COMPONENT,
        "example": None,
        "parameter_default": None,
        "parameter_has_default": True,
        "parameter_name": None,
        "hidden": True,
    }


def _find_dependency(
    endpoint: str,
    category: str,
    config: AppConfig,
    api_map: dict[str, int],
) -> Optional[Dependency]:
    if category == "unnamed_endpoints":
        try:
            return config.dependency(int(endpoint))
        except ValueError:
            return None
    name = endpoint.lstrip("/")
    for dep in config.dependencies:
        if dep.named == name:
            return dep
    if name in api_map:
        return config.dependency(api_map[name])
    return None


def _insert_state_parameters(
    parameters: list[dict[str, Any]],
    dependency: Dependency,
    config: AppConfig,
) -> list[dict[str, Any]]:
    if len(dependency.inputs) == len(parameters):
        return parameters
    patched = list(parameters)
    for idx, component_id in enumerate(dependency.inputs):
        if config.component_type(component_id) == STATE_COMPONENT:
            patched.insert(idx, _state_parameter())
    return patched


def transform_api_info(
    raw: dict[str, Any],
    config: AppConfig,
    api_map: dict[str, int],
) -> ApiInfo:
    """Build the immutable ApiInfo from an unwrapped /info payload.

    Hidden state parameters are inserted wherever the dependency declares
    more inputs than the server described.  ``/predict`` doubles as
    unnamed endpoint 0 when no such entry exists.
    """
    tables: dict[str, dict[Any, EndpointInfo]] = {"named_endpoints": {}, "unnamed_endpoints": {}}

    for category in ("named_endpoints", "unnamed_endpoints"):
        for endpoint, description in raw.get(category, {}).items():
            if not isinstance(description, dict):
                raise SchemaError(API_INFO_ERROR_MSG + f"bad description for {endpoint}")
            parameters = list(description.get("parameters") or [])
            returns = list(description.get("returns") or [])

            dependency = _find_dependency(str(endpoint), category, config, api_map)
            if dependency is not None:
                parameters = _insert_state_parameters(parameters, dependency, config)

            info = EndpointInfo(
                parameters=tuple(_parameter(p, "parameter") for p in parameters),
                returns=tuple(_parameter(r, "return") for r in returns),
                generator=dependency.types.generator if dependency else False,
                cancel=dependency.types.cancel if dependency else False,
            )

            if category == "unnamed_endpoints":
                try:
                    tables[category][int(endpoint)] = info
                except ValueError:
                    logger.warning("Skipping non-numeric unnamed endpoint %r", endpoint)
            else:
                tables[category][endpoint] = info

    named, unnamed = tables["named_endpoints"], tables["unnamed_endpoints"]
    if "/predict" in named and 0 not in unnamed:
        unnamed[0] = named["/predict"]

    return ApiInfo(
        named_endpoints=MappingProxyType(named),
        unnamed_endpoints=MappingProxyType(unnamed),
    )


def find_endpoint(
    api_info: ApiInfo,
    endpoint: EndpointId,
    api_map: dict[str, int],
    config: AppConfig,
) -> tuple[Optional[int], Optional[EndpointInfo], Optional[Dependency]]:
    """Return ``(fn_index, endpoint_info, dependency)`` for a name or index.

    A numeric endpoint missing from the unnamed table falls back to the
    named entry whose dependency has that id.
    """
    if isinstance(endpoint, int):
        fn_index: Optional[int] = endpoint
        info = api_info.unnamed_endpoints.get(endpoint)
        dependency = config.dependency(endpoint)
        if info is None and dependency is not None and dependency.named:
            info = api_info.named_endpoints.get(f"/{dependency.named}")
        return fn_index, info, dependency

    name = endpoint.strip().lstrip("/")
    fn_index = api_map.get(name)
    info = api_info.named_endpoints.get(f"/{name}")
    dependency = config.dependency(fn_index) if fn_index is not None else None
    return fn_index, info, dependency


# ── Rendering ───────────────────────────────────────────────


def sanitize_parameter_name(label: str) -> str:
    return (
        "".join(ch for ch in label if ch.isalnum() or ch in " _")
        .replace(" ", "_")
        .lower()
    )


def _render_param(param: ParameterInfo) -> str:
    name = param.parameter_name or sanitize_parameter_name(param.label) or "value"
    rendered = f"{name}: {param.type or 'Any'}"
    if param.parameter_has_default:
        rendered += f" = {param.parameter_default!r}"
    return rendered


def render_endpoint(name_or_index: EndpointId, info: EndpointInfo) -> str:
    params = [_render_param(p) for p in info.parameters if not p.hidden]
    if isinstance(name_or_index, str):
        params.append(f'api_name="{name_or_index}"')
    else:
        params.append(f"fn_index={name_or_index}")
    returns = [_render_param(r) for r in info.returns]
    rendered_returns = ", ".join(returns)
    if len(returns) != 1:
        rendered_returns = f"({rendered_returns})"
    return f"predict({', '.join(params)}) -> {rendered_returns}"


def render_api_info(api_info: ApiInfo, all_endpoints: bool = False) -> str:
    """One line per endpoint; unnamed endpoints only when ``all_endpoints``."""
    lines = [f"Named API endpoints: {len(api_info.named_endpoints)}"]
    lines += [f" - {render_endpoint(n, i)}" for n, i in api_info.named_endpoints.items()]
    if all_endpoints:
        lines.append(f"Unnamed API endpoints: {len(api_info.unnamed_endpoints)}")
        lines += [f" - {render_endpoint(n, i)}" for n, i in api_info.unnamed_endpoints.items()]
    return "\n".join(lines)
