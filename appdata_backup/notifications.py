"""
Notification delivery using Apprise.
"""
import apprise

from appdata_backup.utils import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

NOTIFY_TITLE_PREFIX = 'Appdata Backup'

# Notification importance -> Apprise notify type
_NOTIFY_TYPES = {
    'normal': apprise.NotifyType.INFO,
    'success': apprise.NotifyType.SUCCESS,
    'warning': apprise.NotifyType.WARNING,
    'alert': apprise.NotifyType.FAILURE,
}


def get_apprise_instance(urls):
    """Create an Apprise instance with the given service URLs.

    Returns ``(apobj, added)``; URLs that Apprise rejects are logged and skipped.
    """
    apobj = apprise.Apprise()
    added = 0
    for url in urls or []:
        url = url.strip()
        if not url:
            continue
        try:
            if apobj.add(url):
                added += 1
            else:
                logger.warning("Apprise: failed to add URL: %s", url)
        except Exception as e:
            logger.exception("Apprise: exception while adding URL %s: %s", url, e)
    return apobj, added


def notify(urls, subject, description, message='', notify_type='normal'):
    """Send a notification to all configured services.

    ``subject`` and ``description`` form the title, ``message`` the body.
    Returns True if at least one service accepted the notification.
    """
    apobj, added = get_apprise_instance(urls)
    if added == 0:
        logger.debug("No notification services configured; skipping '%s'", subject)
        return False

    title = f"{subject}: {description}" if description else subject
    body = message or description or subject
    try:
        res = apobj.notify(
            title=title,
            body=body,
            notify_type=_NOTIFY_TYPES.get(notify_type, apprise.NotifyType.INFO),
        )
    except Exception as e:
        logger.exception("Apprise: exception during notify (%s): %s", subject, e)
        return False
    if not res:
        logger.warning("Apprise: notification '%s' was not delivered", title)
    return bool(res)


class Notifier:
    """Bound notifier for a single run's configured services."""

    def __init__(self, urls=None):
        self.urls = list(urls or [])

    def __call__(self, subject, description, message='', notify_type='normal'):
        return notify(self.urls, subject, description, message, notify_type)
