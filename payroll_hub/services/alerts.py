"""
Payroll Document Hub - Alert Notifier

Sends operational alerts (critical errors, error spikes, failing health
checks). Every alert is logged at CRITICAL level; when ALERT_WEBHOOK_URL is
configured the alert is also POSTed as JSON to that webhook.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..config import ALERT_WEBHOOK_URL, ENVIRONMENT

logger = logging.getLogger(__name__)

ALERT_REQUEST_TIMEOUT = 10


class AlertNotifier:
    """Logs alerts and forwards them to an optional webhook."""

    def __init__(self, webhook_url: Optional[str] = ALERT_WEBHOOK_URL, history_size: int = 100):
        self.webhook_url = webhook_url
        self.history_size = history_size
        self._history: List[Dict[str, Any]] = []

    async def send(self, alert_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        alert = {
            "type": alert_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": ENVIRONMENT,
        }
        logger.critical("ALERT [%s]: %s", alert_type, data)

        self._history.insert(0, alert)
        del self._history[self.history_size:]

        if self.webhook_url:
            try:
                async with httpx.AsyncClient(timeout=ALERT_REQUEST_TIMEOUT) as client:
                    response = await client.post(self.webhook_url, json=alert)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Failed to deliver alert %s to webhook: %s", alert_type, str(e))
        return alert

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._history[:limit]
