"""Fire-and-forget push notifications to property hosts."""
import logging
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that only writes notifications to the log."""

    def notify(self, user_id: str, title: str, body: str, notification_type: str) -> None:
        logger.info(
            f"Notification for user {user_id}: {title}",
            extra={'notification_type': notification_type, 'notification_body': body}
        )


class ExpoPushNotifier:
    """Sends notifications through the Expo push service."""

    PUSH_URL = 'https://exp.host/--/api/v2/push/send'

    def __init__(self, token_lookup: Callable[[str], Optional[str]], timeout: int = 10):
        """
        Initialize the notifier.

        Args:
            token_lookup: Returns the Expo push token of a user, or None
            timeout: HTTP request timeout in seconds (default: 10)
        """
        self.token_lookup = token_lookup
        self.timeout = timeout

    def notify(self, user_id: str, title: str, body: str, notification_type: str) -> None:
        """
        Send a push notification.

        Delivery problems are logged and never raised.

        Args:
            user_id: Host to notify
            title: Notification title
            body: Notification text
            notification_type: Type passed in the data payload
        """
        try:
            token = self.token_lookup(user_id)
            if not token:
                logger.info(f"No push token found for user: {user_id}")
                return

            response = requests.post(
                self.PUSH_URL,
                json={
                    'to': token,
                    'sound': 'default',
                    'title': title,
                    'body': body,
                    'data': {'type': notification_type},
                },
                timeout=self.timeout
            )
            response.raise_for_status()
        except Exception as e:
            logger.warning(
                f"Error sending push notification: {type(e).__name__}",
                extra={'user_id': user_id, 'notification_type': notification_type}
            )
