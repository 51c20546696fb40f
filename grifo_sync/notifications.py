"""Native OS notifications for Grifo Sync alerts."""

import logging
import platform
import subprocess

from .config import APP_NAME

logger = logging.getLogger(__name__)


def send_notification(title: str, message: str, sound: bool = True) -> None:
    """Show a sync alert as a native OS notification. Never raises.

    Args:
        title: Notification title, e.g. "Sincronização Concluída".
        message: Notification body text.
        sound: Whether to play a sound (macOS only).
    """
    system = platform.system()
    try:
        if system == "Darwin":
            _send_macos(title, message, sound)
        elif system == "Windows":
            _send_windows(title, message)
        elif system == "Linux":
            _send_linux(title, message)
        else:
            logger.debug(f"Notifications not supported on {system}")
    except Exception as e:
        logger.debug(f"Failed to send notification: {e}")


def _send_macos(title: str, message: str, sound: bool) -> None:
    safe_title = title.replace("\\", "\\\\").replace('"', '\\"')
    safe_message = message.replace("\\", "\\\\").replace('"', '\\"')

    sound_clause = ' sound name "default"' if sound else ""
    script = f'display notification "{safe_message}" with title "{safe_title}"{sound_clause}'
    subprocess.run(["osascript", "-e", script], capture_output=True, timeout=5)


def _send_windows(title: str, message: str) -> None:
    """Toast notification via PowerShell."""
    # PowerShell single-quoted literals escape ' as ''
    safe_title = title.replace("'", "''")
    safe_message = message.replace("'", "''")

    ps_script = (
        "[Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, "
        "ContentType = WindowsRuntime] > $null; "
        "$template = [Windows.UI.Notifications.ToastNotificationManager]::"
        "GetTemplateContent([Windows.UI.Notifications.ToastTemplateType]::ToastText02); "
        "$lines = $template.GetElementsByTagName('text'); "
        f"$lines.Item(0).AppendChild($template.CreateTextNode('{safe_title}')) > $null; "
        f"$lines.Item(1).AppendChild($template.CreateTextNode('{safe_message}')) > $null; "
        "[Windows.UI.Notifications.ToastNotificationManager]::"
        f"CreateToastNotifier('{APP_NAME}')"
        ".Show([Windows.UI.Notifications.ToastNotification]::new($template))"
    )
    subprocess.run(["powershell", "-Command", ps_script], capture_output=True, timeout=10)


def _send_linux(title: str, message: str) -> None:
    subprocess.run(
        ["notify-send", "--app-name", APP_NAME, title, message],
        capture_output=True,
        timeout=5,
    )
