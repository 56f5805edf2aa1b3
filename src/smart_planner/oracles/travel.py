# src/smart_planner/oracles/travel.py

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..tasks.task_models import Location

logger = logging.getLogger(__name__)


class TravelLookupError(RuntimeError):
    pass


def _coords(loc: Location) -> str:
    return f"{loc.latitude},{loc.longitude}"


def parse_distance_matrix(data: Any) -> int:
    """Pull the single origin->destination duration (seconds) out of a distance-matrix reply."""
    if not isinstance(data, dict):
        raise TravelLookupError("distance matrix reply is not an object")

    status = data.get("status")
    if status not in (None, "OK"):
        raise TravelLookupError(f"distance matrix status {status}")

    try:
        element = data["rows"][0]["elements"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise TravelLookupError("distance matrix reply has no elements") from e

    if element.get("status") not in (None, "OK"):
        raise TravelLookupError(f"route status {element.get('status')}")

    try:
        return int(element["duration"]["value"])
    except (KeyError, TypeError, ValueError) as e:
        raise TravelLookupError("route has no duration") from e


class DistanceMatrixTravelOracle:
    """
    Travel-time oracle backed by a Google-style distance-matrix HTTP API.

    One shared AsyncClient per oracle; call aclose() on shutdown.
    """

    def __init__(
            self,
            *,
            api_key: str,
            base_url: str = "https://maps.googleapis.com/maps/api/distancematrix/json",
            mode: str = "driving",
            timeout: float = 5.0,
            client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("travel api_key is required")
        self._api_key = api_key
        self._base_url = base_url
        self._mode = mode
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def estimate_travel_seconds(self, origin: Location, dest: Location) -> int:
        params = {
            "origins": _coords(origin),
            "destinations": _coords(dest),
            "mode": self._mode,
            "key": self._api_key,
        }
        r = await self._client.get(self._base_url, params=params)
        r.raise_for_status()
        seconds = parse_distance_matrix(r.json())
        logger.debug("Travel %s -> %s: %ss", params["origins"], params["destinations"], seconds)
        return seconds
