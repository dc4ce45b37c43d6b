"""Slack incoming-webhook notification sink."""

import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class SlackWebhookSink:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10.0):
        if webhook_url is None:
            webhook_url = os.getenv("SLACK_WEBHOOK_URL")
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, message: str):
        if not self.webhook_url:
            logger.debug("SLACK_WEBHOOK_URL not set; dropping notification")
            return
        response = requests.post(self.webhook_url, json={"text": message}, timeout=self.timeout)
        response.raise_for_status()
