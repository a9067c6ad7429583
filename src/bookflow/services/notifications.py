"""Fire-and-forget notifications to the production team."""

from __future__ import annotations

import logging
from typing import Any, Dict

import aiohttp

logger = logging.getLogger(__name__)


class Notifier:
    """Notification sink; failures never reach the workflow."""

    async def notify(self, text: str, **fields: Any) -> None:
        return None


class NullNotifier(Notifier):
    """Used when no webhook is configured."""


class SlackNotifier(Notifier):
    """Posts messages to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @staticmethod
    def _build_payload(text: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": text}
        if fields:
            payload["blocks"] = [
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*{key}*\n{value}"}
                        for key, value in fields.items()
                    ],
                },
            ]
        return payload

    async def notify(self, text: str, **fields: Any) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=self._build_payload(text, fields)) as response:
                    if response.status >= 400:
                        body = await response.text()
                        logger.warning(f"Slack webhook returned HTTP {response.status}: {body}")
        except Exception as exc:
            logger.warning(f"Failed to send Slack notification: {exc}")


def create_notifier(webhook_url: str | None) -> Notifier:
    if webhook_url:
        return SlackNotifier(webhook_url)
    return NullNotifier()
