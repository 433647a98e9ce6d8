# /dmfy/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any

from dmfy.config.settings import settings
from dmfy.models.flow import utcnow

# Sends critical alerts to an external webhook so that delivery outages
# (for example an expired page token) are reported as soon as they happen.

logger = logging.getLogger(__name__)

class AlertingService:
    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        if not self.client:
            return
        try:
            alert_data = {
                "severity": "critical", "service": "dmfy-webhook",
                "error": error, "context": context, "timestamp": utcnow().isoformat(),
                "environment": settings.environment
            }
            await self.client.post(self.webhook_url, json=alert_data)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send critical alert: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()

# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url)
