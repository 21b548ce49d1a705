"""
Gotify notifications for backup results.

Delivery is best-effort: a failed notification is logged and never turns a
backup run into a failure.
"""

import logging
from datetime import datetime
from typing import Optional

import requests

from .errors import BackupError


logger = logging.getLogger(__name__)


class NotifyError(BackupError):
    """Raised when a notification cannot be delivered."""
    pass


class GotifyNotifier:
    """
    Sends messages to a Gotify server.

    Each message is a single POST of {title, message, priority} to
    <url>/message, authenticated with the X-Gotify-Key header.
    """

    def __init__(self, url: str, token: str, success_priority: int = 5,
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        """
        Initialize notifier.

        Args:
            url: Gotify server base URL
            token: Gotify application token
            success_priority: Priority used for the connection test
            timeout: HTTP timeout in seconds
            session: requests session (a new one if None)
        """
        self.url = url.rstrip('/')
        self.token = token
        self.success_priority = success_priority
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, title: str, message: str, priority: int):
        """
        Deliver one message.

        Raises:
            NotifyError: If the server is not configured, the request cannot be
                built or sent (e.g. a token that is not valid in a header), or it
                answers with a non-2xx status
        """
        if not self.url or not self.token:
            raise NotifyError("Gotify URL or token is empty. Please check your configuration.")

        try:
            response = self.session.post(
                f"{self.url}/message",
                json={'title': title, 'message': message, 'priority': priority},
                headers={'X-Gotify-Key': self.token},
                timeout=self.timeout
            )
        except (requests.RequestException, ValueError, OSError) as e:
            raise NotifyError(f"Gotify notification failed: {e}")

        if not 200 <= response.status_code < 300:
            raise NotifyError(f"Gotify notification failed with HTTP status {response.status_code}")

    def notify(self, title: str, message: str, priority: int) -> bool:
        """
        Deliver one message, logging instead of raising on failure.

        Returns:
            True if the message was delivered
        """
        logger.info(f"Attempting to send Gotify notification: {title}")
        try:
            self.send(title, message, priority)
        except NotifyError as e:
            logger.error(str(e))
            return False

        logger.info("Gotify notification sent successfully")
        return True

    def test_connection(self) -> bool:
        """
        Send a test message to check that notifications work.

        Returns:
            True if the test message was delivered
        """
        logger.info("Testing Gotify connection...")
        sent = self.notify(
            'Backup Test',
            f"Mailcow backup script is testing Gotify connection at {datetime.now():%Y-%m-%d %H:%M:%S}",
            self.success_priority
        )
        if sent:
            logger.info("Gotify connection test successful")
        else:
            logger.warning("Gotify connection test failed. Notifications may not work.")
        return sent


def create_notifier(config) -> GotifyNotifier:
    """Build the notifier for a BackupConfig."""
    return GotifyNotifier(
        url=config.gotify_url,
        token=config.gotify_token,
        success_priority=config.gotify_success_priority
    )
