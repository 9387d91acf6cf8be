"""
Season-completion push notifications via Neynar (Farcaster frame notifications).

Best effort: a missing API key or recipient is logged and skipped, and
delivery failures are logged. Completion is never rolled back because a
notification did not go out.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import httpx

from backend_eon.database.models import SeasonGoal
from backend_eon.eon_logging import get_logger

logger = get_logger(__name__)

NEYNAR_NOTIFICATIONS_URL = "https://api.neynar.com/v2/farcaster/frame/notifications"
SEASON_COMPLETE_TITLE = "You Completed a Season \U0001f389"
SEASON_COMPLETE_BODY = "Congrats on another successful season, open the miniapp to see your impact!"


class SeasonNotifier(Protocol):
    async def notify_season_complete(self, goal: SeasonGoal) -> bool: ...


def build_notification(fid: int, target_url: str, notification_id: str | None = None) -> dict[str, Any]:
    return {
        "target_fids": [fid],
        "notification": {
            "title": SEASON_COMPLETE_TITLE,
            "body": SEASON_COMPLETE_BODY,
            "target_url": target_url,
            "uuid": notification_id or str(uuid.uuid4()),
        },
    }


class NeynarNotifier:
    def __init__(
        self,
        api_key: str,
        target_url: str,
        *,
        request_timeout_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._target_url = target_url
        self._timeout = request_timeout_sec
        self._transport = transport

    async def notify_season_complete(self, goal: SeasonGoal) -> bool:
        """Send the completion notification. True if Neynar accepted it."""
        if not self._api_key:
            logger.info("season_notification_skipped", season_id=goal.goal_id, reason="no_api_key")
            return False
        if goal.notify_id is None:
            logger.info("season_notification_skipped", season_id=goal.goal_id, reason="no_recipient")
            return False
        body = build_notification(goal.notify_id, self._target_url)
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout), transport=self._transport
            ) as client:
                resp = await client.post(
                    NEYNAR_NOTIFICATIONS_URL,
                    json=body,
                    headers={"x-api-key": self._api_key, "content-type": "application/json"},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "season_notification_failed",
                season_id=goal.goal_id,
                wallet_id=goal.wallet_address,
                error=str(e),
            )
            return False
        logger.info(
            "season_notification_sent",
            season_id=goal.goal_id,
            wallet_id=goal.wallet_address,
            fid=goal.notify_id,
        )
        return True
