"""Endpoint resolution: app reference -> host, cookies, signed token, config."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit

import aiohttp
from pydantic import ValidationError

from luna_vits.gradio.constants import (
    CONFIG_ERROR_MSG,
    CONFIG_URL,
    HF_API_URL,
    HOST_URL,
    INVALID_CREDENTIALS_MSG,
    INVALID_URL_MSG,
    JWT_URL,
    LOGIN_URL,
    MISSING_CREDENTIALS_MSG,
    SPACE_METADATA_ERROR_MSG,
)
from luna_vits.gradio.errors import AuthError, ConfigError, ResolutionError
from luna_vits.gradio.schemas import AppConfig, Dependency
from luna_vits.logging import get_logger

logger = get_logger("gradio.resolver")

RE_SPACE_NAME = re.compile(r"^[a-zA-Z0-9_\-\.]+/[a-zA-Z0-9_\-\.]+$")
RE_SPACE_DOMAIN = re.compile(r".*hf\.space/?$")
RE_COOKIE_SPLIT = re.compile(r",(?=\s*[^\s=;]+=[^\s=;]+)")


@dataclass(frozen=True)
class ResolvedEndpoint:
    host: str
    ws_protocol: str
    http_protocol: str
    space_id: Optional[str] = None

    @property
    def root(self) -> str:
        return f"{self.http_protocol}://{self.host}"


def auth_headers(hf_token: str = "", cookies: Optional[str] = None) -> dict[str, str]:
    headers: dict[str, str] = {}
    if hf_token:
        headers["Authorization"] = f"Bearer {hf_token}"
    if cookies:
        headers["Cookie"] = cookies
    return headers


def determine_protocol(endpoint: str) -> ResolvedEndpoint:
    """Split a URL (or bare host) into host and ws/http schemes.

    Bare hosts default to the secure schemes.  ``*.hf.space`` hosts
    always use ``wss`` and drop any path.
    """
    if endpoint.startswith("http"):
        parts = urlsplit(endpoint)
        scheme = parts.scheme
        if parts.netloc.endswith("hf.space"):
            return ResolvedEndpoint(host=parts.netloc, ws_protocol="wss", http_protocol=scheme)
        path = parts.path.rstrip("/")
        return ResolvedEndpoint(
            host=parts.netloc + path,
            ws_protocol="wss" if scheme == "https" else "ws",
            http_protocol=scheme,
        )
    return ResolvedEndpoint(host=endpoint, ws_protocol="wss", http_protocol="https")


async def process_endpoint(
    http: aiohttp.ClientSession,
    app_reference: str,
    hf_token: str = "",
) -> ResolvedEndpoint:
    """Resolve a space name, space domain, or URL into a ResolvedEndpoint.

    Space names (``user/space``) are looked up through the hub's host
    metadata; any failure there is a ResolutionError.
    """
    reference = app_reference.strip().rstrip("/")

    if RE_SPACE_NAME.match(reference):
        url = f"{HF_API_URL}/{reference}/{HOST_URL}"
        try:
            async with http.get(url, headers=auth_headers(hf_token)) as resp:
                body = await resp.json(content_type=None)
            host = body["host"]
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, TypeError) as exc:
            raise ResolutionError(SPACE_METADATA_ERROR_MSG + str(exc)) from exc
        resolved = determine_protocol(host)
        logger.debug("Resolved space %s -> %s", reference, resolved.host, extra={"app": reference})
        return ResolvedEndpoint(
            host=resolved.host,
            ws_protocol=resolved.ws_protocol,
            http_protocol=resolved.http_protocol,
            space_id=reference,
        )

    if RE_SPACE_DOMAIN.match(reference):
        resolved = determine_protocol(reference)
        return ResolvedEndpoint(
            host=resolved.host,
            ws_protocol=resolved.ws_protocol,
            http_protocol=resolved.http_protocol,
            space_id=resolved.host.replace(".hf.space", ""),
        )

    return determine_protocol(reference)


def join_urls(*urls: str) -> str:
    """Join URL parts, collapsing duplicate slashes at each seam."""
    base, *parts = urls
    if not urlsplit(base).scheme or not urlsplit(base).netloc:
        raise ResolutionError(INVALID_URL_MSG)
    for part in parts:
        base = urljoin(base.rstrip("/") + "/", part.lstrip("/"))
    return base


def resolve_root(base_url: str, root_path: str, prioritize_base: bool) -> str:
    """Combine the base URL with the config's root path.

    An absolute ``root_path`` wins only when ``prioritize_base`` is False;
    a relative one is appended to the base.
    """
    if root_path.startswith(("http://", "https://")):
        return base_url if prioritize_base else root_path
    return base_url + root_path


def parse_cookies(cookie_header: str) -> list[str]:
    """Reduce a (possibly comma-joined) Set-Cookie header to ``name=value`` pairs."""
    cookies = []
    for part in RE_COOKIE_SPLIT.split(cookie_header):
        name, _, value = part.split(";")[0].partition("=")
        if name.strip() and value.strip():
            cookies.append(f"{name.strip()}={value.strip()}")
    return cookies


async def get_cookie_header(
    http: aiohttp.ClientSession,
    http_protocol: str,
    host: str,
    auth: tuple[str, str],
    hf_token: str = "",
) -> Optional[str]:
    """Log in with basic credentials and return the raw Set-Cookie value."""
    form = aiohttp.FormData()
    form.add_field("username", auth[0])
    form.add_field("password", auth[1])

    url = f"{http_protocol}://{host}/{LOGIN_URL}"
    try:
        async with http.post(url, data=form, headers=auth_headers(hf_token)) as resp:
            status = resp.status
            set_cookie = resp.headers.getall("Set-Cookie", [])
    except asyncio.CancelledError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise ResolutionError(SPACE_METADATA_ERROR_MSG + str(exc)) from exc

    if status == 200:
        return ", ".join(set_cookie) or None
    if status == 401:
        raise AuthError(INVALID_CREDENTIALS_MSG)
    raise ResolutionError(SPACE_METADATA_ERROR_MSG)


async def get_jwt(
    http: aiohttp.ClientSession,
    space_id: str,
    hf_token: str,
    cookies: Optional[str] = None,
) -> Optional[str]:
    """Fetch the space's signed token; any failure yields None."""
    url = f"{HF_API_URL}/{space_id}/{JWT_URL}"
    try:
        async with http.get(url, headers=auth_headers(hf_token, cookies)) as resp:
            body = await resp.json(content_type=None)
        return (body or {}).get("token") or None
    except asyncio.CancelledError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, AttributeError) as exc:
        logger.debug("Space token unavailable for %s: %s", space_id, exc, extra={"app": space_id})
        return None


async def resolve_config(
    http: aiohttp.ClientSession,
    root: str,
    headers: dict[str, str],
    has_auth: bool = False,
) -> AppConfig:
    """Fetch ``<root>/config`` and normalise it.

    A 401 means credentials are missing (no auth supplied) or rejected.
    A 200 body may itself declare ``auth_required``; that is returned
    as-is for the caller to act on.
    """
    url = join_urls(root, CONFIG_URL)
    try:
        async with http.get(url, headers=headers) as resp:
            status = resp.status
            body = await resp.json(content_type=None) if status == 200 else None
    except asyncio.CancelledError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise ResolutionError(f"Could not reach {root}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(CONFIG_ERROR_MSG + str(exc)) from exc

    if status == 401:
        raise AuthError(INVALID_CREDENTIALS_MSG if has_auth else MISSING_CREDENTIALS_MSG)
    if status != 200:
        raise ConfigError(CONFIG_ERROR_MSG + f"HTTP {status}")
    if not isinstance(body, dict):
        raise ConfigError(CONFIG_ERROR_MSG + "config is not an object")

    body = dict(body)
    body["root"] = root
    try:
        return AppConfig.model_validate(body)
    except ValidationError as exc:
        raise ConfigError(CONFIG_ERROR_MSG + str(exc)) from exc


def map_names_to_ids(dependencies: list[Dependency]) -> dict[str, int]:
    """API name (no leading slash) -> dependency id."""
    apis: dict[str, int] = {}
    for dep in dependencies:
        if dep.named and dep.id is not None:
            apis[dep.named] = dep.id
    return apis
