# src/smart_planner/oracles/offline.py

from __future__ import annotations

import math

from ..tasks.task_models import Location, Task

_URGENT_WORDS = ("urgent", "asap", "critical", "important", "deadline", "must")


class OfflineImportanceOracle:
    """
    Offline deterministic importance oracle used when no model endpoint is configured.

    Behavior:
    - keyword hit in title/description -> 0.8
    - otherwise the neutral 0.5
    """

    async def predict_importance(self, task: Task) -> float:
        text = f"{task.title} {task.description or ''}".lower()
        if any(w in text for w in _URGENT_WORDS):
            return 0.8
        return 0.5


class StraightLineTravelOracle:
    """
    Offline travel estimate: great-circle distance at a fixed average speed.

    Used when no distance-matrix API key is configured.
    """

    EARTH_RADIUS_M = 6_371_000.0

    def __init__(self, speed_kmh: float = 30.0) -> None:
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self._speed_mps = speed_kmh * 1000.0 / 3600.0

    @classmethod
    def distance_meters(cls, origin: Location, dest: Location) -> float:
        lat1, lat2 = math.radians(origin.latitude), math.radians(dest.latitude)
        dlat = lat2 - lat1
        dlon = math.radians(dest.longitude - origin.longitude)
        a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
        return 2 * cls.EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))

    async def estimate_travel_seconds(self, origin: Location, dest: Location) -> int:
        return int(round(self.distance_meters(origin, dest) / self._speed_mps))
