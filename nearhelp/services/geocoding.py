from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from nearhelp.core.config import GEOCODER_ENABLED, GEOCODER_URL, GEOCODER_USER_AGENT
from nearhelp.services.geo import Coordinates


def _label_from_address(data: Dict[str, Any]) -> Optional[str]:
    address = data.get("address") or {}
    parts = []

    area = address.get("suburb") or address.get("neighbourhood")
    if area:
        parts.append(area)
    town = address.get("city") or address.get("town") or address.get("village")
    if town:
        parts.append(town)
    if address.get("state"):
        parts.append(address["state"])
    if address.get("country"):
        parts.append(address["country"])

    if parts:
        return ", ".join(parts)
    return data.get("display_name")


async def reverse_geocode(
    coordinates: Coordinates,
    client: Optional[httpx.AsyncClient] = None,
    enabled: bool = GEOCODER_ENABLED,
) -> str:
    """
    Human-readable place label for a fix. Informational only, so any failure
    falls back to the rounded coordinates instead of raising.
    """
    fallback = coordinates.label()
    if not enabled:
        return fallback

    params = {
        "format": "json",
        "lat": coordinates.lat,
        "lon": coordinates.lng,
        "zoom": 14,
        "addressdetails": 1,
    }
    headers = {"User-Agent": GEOCODER_USER_AGENT, "Accept": "application/json"}

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5) as own_client:
                resp = await own_client.get(GEOCODER_URL, params=params, headers=headers)
        else:
            resp = await client.get(GEOCODER_URL, params=params, headers=headers)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning(f"[geocode] lookup failed for {fallback}: {exc!r}")
        return fallback

    if not isinstance(data, dict):
        return fallback
    return _label_from_address(data) or fallback
