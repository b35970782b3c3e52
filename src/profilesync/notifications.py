"""Desktop notifications for profilesync.

This module provides:
- Native desktop notifications (Linux notify-send, macOS notification center)
- Fallback to the log if notifications are unavailable
"""

from __future__ import annotations

import logging
import platform
import subprocess
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

APP_NAME = "profilesync"


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    WARNING = auto()
    ERROR = auto()


@dataclass
class Notification:
    """Represents a notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


def _notify_macos(notification: Notification) -> bool:
    """Send notification on macOS using osascript."""
    title = notification.title.replace('"', '\\"')
    message = notification.message.replace('"', '\\"')
    script = f'display notification "{message}" with title "{title}"'
    try:
        subprocess.run(["osascript", "-e", script], capture_output=True, check=True)
        return True
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("macOS notification failed: %s", e)
        return False


def _notify_linux(notification: Notification) -> bool:
    """Send notification on Linux using notify-send."""
    urgency = "critical" if notification.type is NotificationType.ERROR else "normal"
    try:
        subprocess.run(
            [
                "notify-send",
                "--urgency", urgency,
                "--app-name", APP_NAME,
                notification.title,
                notification.message,
            ],
            capture_output=True,
            check=True,
        )
        return True
    except FileNotFoundError:
        logger.debug("notify-send not found")
        return False
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("Linux notification failed: %s", e)
        return False


def send_notification(notification: Notification) -> bool:
    """Send a desktop notification.

    Falls back to logging the notification when no notifier is available.

    Returns:
        True if a desktop notification was shown.
    """
    system = platform.system()
    if system == "Linux":
        sent = _notify_linux(notification)
    elif system == "Darwin":
        sent = _notify_macos(notification)
    else:
        sent = False

    if not sent:
        logger.info("%s: %s", notification.title, notification.message)
    return sent


def notify_remote_change(backend_name: str) -> bool:
    """Tell the user that the remote backup changed."""
    return send_notification(Notification(
        title="profilesync - Remote changes",
        message=f"Settings changed on {backend_name}. Run a sync to apply them.",
    ))


def notify_error(message: str) -> bool:
    """Send an error notification."""
    return send_notification(Notification(
        title="profilesync - Error",
        message=message,
        type=NotificationType.ERROR,
    ))
