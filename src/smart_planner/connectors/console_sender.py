# src/smart_planner/connectors/console_sender.py

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


class ConsoleNotificationSender:
    """
    NotificationSender for local runs: prints fired notifications and always succeeds.

    Used when no push/webhook transport is configured.
    """

    def __init__(self, *, echo: bool = True) -> None:
        self._echo = echo

    async def deliver(
            self,
            *,
            user_id: str,
            title: str,
            body: str,
            metadata: dict[str, Any],
    ) -> bool:
        logger.info("Notify user=%s title=%r task=%s", user_id, title, metadata.get("task_id"))
        if self._echo:
            print(f"[{_ts_local()}] [{user_id}] {title}: {body}", flush=True)
        return True
