import logging
from typing import Any, Dict

import requests

from vhoster.domain.errors import WebhookDeliveryError

logger = logging.getLogger(__name__)


class WebhookClient:
    """Posts embed-only messages (Discord webhook format) to a third-party URL.

    The message carries just an embed, so the chat shows the preview without
    the raw link. Deliveries are not retried.
    """

    def __init__(self, timeout_s: float = 10.0, description: str = "Uploaded via Video Hoster"):
        self.timeout_s = timeout_s
        self.description = description

    def build_payload(self, title: str, video_url: str) -> Dict[str, Any]:
        return {"embeds": [{"title": title, "url": video_url, "description": self.description}]}

    def post_embed(self, webhook_url: str, title: str, video_url: str) -> None:
        payload = self.build_payload(title, video_url)
        try:
            response = requests.post(webhook_url, json=payload, timeout=self.timeout_s)
        except requests.RequestException as exc:
            logger.warning(f"WEBHOOK_FAILED: {video_url} network error: {exc}")
            raise WebhookDeliveryError(str(exc)) from exc

        if not 200 <= response.status_code < 300:
            logger.warning(f"WEBHOOK_FAILED: {video_url} upstream status={response.status_code}")
            raise WebhookDeliveryError(
                "Webhook request failed", status=response.status_code, body=response.text
            )
        logger.info(f"WEBHOOK_SENT: {video_url}")
