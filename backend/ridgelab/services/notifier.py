from __future__ import annotations

import logging
from typing import Optional

import requests

from ridgelab.errors import NotificationFailed
from ridgelab.settings import settings

logger = logging.getLogger("ridgelab.notifier")


class NotifierClient:
    """Posts owner notifications to an HTTP endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.notify_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.notify_api_key
        self.timeout = timeout if timeout is not None else settings.notify_timeout_s
        self.session = requests.Session()

    def notify(self, title: str, content: str) -> bool:
        if not self.base_url:
            raise NotificationFailed("Notifier is not configured.")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = self.session.post(
                self.base_url,
                json={"title": title, "content": content},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NotificationFailed(f"Notification request failed: {exc}") from exc

        if not response.ok:
            logger.warning("Notification rejected: status=%s title=%s", response.status_code, title)
            return False
        return True
