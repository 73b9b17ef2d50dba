"""M3U playlist parsing and channel listing helpers."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

EXTINF_PREFIX = "#EXTINF:"
LICENSE_KEY_PREFIX = "#KODIPROP:inputstream.adaptive.license_key="
USER_AGENT_PREFIX = "#EXTVLCOPT:http-user-agent="
HTTP_OPTIONS_PREFIX = "#EXTHTTP:"
DEFAULT_GROUP = "General"

_LOGO_PATTERN = re.compile(r'tvg-logo="([^"]+)"')
_GROUP_PATTERN = re.compile(r'group-title="([^"]+)"')
_LINE_SPLIT = re.compile(r"\r?\n")


class PlaylistFetchError(Exception):
    """Raised when the remote playlist cannot be downloaded."""


@dataclass
class Channel:
    name: str = ""
    manifest_uri: str = ""
    logo_url: Optional[str] = None
    group: str = DEFAULT_GROUP
    drm_key_id: Optional[str] = None
    drm_key: Optional[str] = None
    user_agent: Optional[str] = None
    auth_params: Optional[Dict[str, str]] = None


def _parse_extinf(line: str) -> Channel:
    channel = Channel()
    _, comma, name = line.rpartition(",")
    if comma:
        channel.name = name.strip()

    logo_match = _LOGO_PATTERN.search(line)
    if logo_match:
        channel.logo_url = logo_match.group(1)

    group_match = _GROUP_PATTERN.search(line)
    if group_match and group_match.group(1).strip():
        channel.group = group_match.group(1).strip()
    return channel


def _apply_license_key(channel: Channel, value: str) -> None:
    parts = value.split(":")
    if len(parts) == 2 and all(parts):
        channel.drm_key_id, channel.drm_key = parts


def _apply_http_options(channel: Channel, value: str) -> None:
    try:
        options = json.loads(value)
    except ValueError as exc:
        logger.warning("Ignoring malformed %s directive for %r: %s", HTTP_OPTIONS_PREFIX, channel.name, exc)
        return
    if not isinstance(options, dict):
        logger.warning("Ignoring non-object %s directive for %r", HTTP_OPTIONS_PREFIX, channel.name)
        return
    channel.auth_params = {str(key): str(val) for key, val in options.items()}


def parse_playlist(text: str) -> List[Channel]:
    """Parse M3U text into channels, in playlist order.

    Directive lines apply to the channel opened by the most recent
    ``#EXTINF`` line. Channels missing a name or a stream URI are dropped.
    """

    channels: List[Channel] = []
    current: Optional[Channel] = None

    for raw_line in _LINE_SPLIT.split(text or ""):
        line = raw_line.strip()
        if line.startswith(EXTINF_PREFIX):
            if current is not None:
                channels.append(current)
            current = _parse_extinf(line)
        elif current is None:
            continue
        elif line.startswith(LICENSE_KEY_PREFIX):
            _apply_license_key(current, line[len(LICENSE_KEY_PREFIX):])
        elif line.startswith(USER_AGENT_PREFIX):
            current.user_agent = line[len(USER_AGENT_PREFIX):]
        elif line.startswith(HTTP_OPTIONS_PREFIX):
            _apply_http_options(current, line[len(HTTP_OPTIONS_PREFIX):])
        elif line and not line.startswith("#") and not current.manifest_uri:
            current.manifest_uri = line

    if current is not None:
        channels.append(current)
    return [channel for channel in channels if channel.name and channel.manifest_uri]


def list_groups(channels: Iterable[Channel]) -> List[str]:
    groups: List[str] = []
    for channel in channels:
        group = channel.group.strip() if channel.group else ""
        if group and group not in groups:
            groups.append(group)
    return groups


def filter_channels(
    channels: Iterable[Channel],
    search: Optional[str] = None,
    group: Optional[str] = None,
    sort: Optional[str] = None,
) -> List[Channel]:
    """Apply the channel grid's search box, category and sort order."""

    term = (search or "").strip().lower()
    wanted_group = None if group in (None, "", "all") else group

    selected = [
        channel
        for channel in channels
        if (not term or term in channel.name.lower() or term in (channel.group or "").lower())
        and (wanted_group is None or channel.group == wanted_group)
    ]

    if sort == "name":
        selected.sort(key=lambda channel: channel.name.lower())
    elif sort == "name-desc":
        selected.sort(key=lambda channel: channel.name.lower(), reverse=True)
    elif sort == "group":
        selected.sort(key=lambda channel: ((channel.group or "zzz").lower(), channel.name.lower()))
    return selected


def fetch_playlist(url: str, timeout: float, user_agent: Optional[str] = None) -> str:
    headers = {"User-Agent": user_agent} if user_agent else {}
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise PlaylistFetchError(f"Failed to fetch playlist from {url}: {exc}") from exc
    return response.text
