"""STUN/TURN descriptors for RTCConfiguration.

Order of preference: ``ICE_URLS`` (JSON in env), then the TURN credential
endpoint, then a public STUN fallback. The first answer is cached for the
life of the process.
"""

import asyncio
import json
from typing import Any, List, Optional

import aiohttp
from aiortc import RTCIceServer

import config
from config import log

_cache: Optional[List[RTCIceServer]] = None


def fallback_servers() -> List[RTCIceServer]:
    return [RTCIceServer(urls=config.FALLBACK_STUN_URL)]


def parse_ice_servers(raw: Any) -> List[RTCIceServer]:
    """Turn a list of ``{urls, username, credential}`` dicts into RTCIceServer objects."""
    if isinstance(raw, dict):
        raw = raw.get("iceServers", [])
    if not isinstance(raw, list):
        raise ValueError("ice servers must be a list")
    servers = []
    for s in raw:
        if not isinstance(s, dict) or not s.get("urls"):
            continue
        servers.append(
            RTCIceServer(
                urls=s["urls"],
                username=s.get("username"),
                credential=s.get("credential"),
            )
        )
    return servers


async def fetch_turn_servers(session: aiohttp.ClientSession, url: str, timeout: float) -> List[RTCIceServer]:
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
        resp.raise_for_status()
        return parse_ice_servers(await resp.json(content_type=None))


async def get_ice_servers(session: Optional[aiohttp.ClientSession] = None) -> List[RTCIceServer]:
    global _cache
    if _cache is not None:
        return _cache

    if config.ICE_URLS:
        try:
            servers = parse_ice_servers(json.loads(config.ICE_URLS))
        except ValueError as e:
            log.warning("[TURN] ICE_URLS is not valid: %s", e)
            servers = []
        _cache = servers or fallback_servers()
        return _cache

    if not config.TURN_API_URL:
        log.info("[TURN] no TURN API configured, using %s", config.FALLBACK_STUN_URL)
        _cache = fallback_servers()
        return _cache

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()
    try:
        servers = await fetch_turn_servers(session, config.TURN_API_URL, config.TURN_API_TIMEOUT)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        log.warning("[TURN] fetching TURN credentials failed: %s", e)
        servers = []
    finally:
        if own_session:
            await session.close()

    if servers:
        log.info("[TURN] fetched %d ICE server(s)", len(servers))
        _cache = servers
    else:
        log.warning("[TURN] no usable ICE servers, using fallback")
        _cache = fallback_servers()
    return _cache


def clear_cache() -> None:
    global _cache
    _cache = None
