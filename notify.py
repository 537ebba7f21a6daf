"""
Update notifications: ntfy.sh and generic outgoing webhook.

Failures are always logged as warnings and never re-raised so that a broken
notification channel cannot interrupt a watch cycle.
"""

import json
import logging
import string
from typing import Any, Callable, Dict, Optional

import requests

from models import ImageDescriptor

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}


def build_payload(watcher: str, image: ImageDescriptor, new_version: str) -> Dict[str, Any]:
    """Return the dict passed to every sender. Carries no credentials."""
    return {
        'event': 'update_available',
        'watcher': watcher,
        'registry': image.registry,
        'image': image.image,
        'old_version': image.version,
        'new_version': new_version,
        'semver': image.is_semver,
    }


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
        priority (optional) min / low / default / high / urgent  (default: default)
        headers  (optional) Extra HTTP headers dict (e.g. {"Authorization": "Bearer token"})
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    image = payload['image']
    title = f"tagwatch: {image} update available"
    message = f"{payload['old_version']} → {payload['new_version']} ({payload['registry']})"

    priority = cfg.get('priority', 'default')
    if priority not in _NTFY_PRIORITIES:
        priority = 'default'

    headers: Dict[str, str] = {
        'Title': title,
        'Priority': priority,
        'Tags': 'package',
        'Content-Type': 'text/plain',
    }
    for k, v in (cfg.get('headers') or {}).items():
        headers[str(k)] = str(v)

    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                 headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("ntfy: notification sent for %s", image)
        return True
    except requests.RequestException as e:
        logger.warning("ntfy: failed to send notification: %s", e)
        return False


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST (or PUT) a notification payload to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        method        (optional) POST (default) or PUT
        headers       (optional) Dict of extra request headers
        body_template (optional) string.Template body with $watcher, $registry,
                                 $image, $old_version, $new_version, $event.
                                 Without it the payload is sent as JSON.
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    method = (cfg.get('method') or 'POST').upper()
    headers: Dict[str, str] = {'Content-Type': 'application/json'}
    headers.update({str(k): str(v) for k, v in (cfg.get('headers') or {}).items()})

    body_template: Optional[str] = cfg.get('body_template')
    if body_template:
        body = string.Template(body_template).safe_substitute(
            {k: '' if v is None else str(v) for k, v in payload.items()})
    else:
        body = json.dumps(payload)

    try:
        response = requests.request(method, url, data=body.encode('utf-8'),
                                    headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("webhook: notification sent for %s", payload['image'])
        return True
    except requests.RequestException as e:
        logger.warning("webhook: failed to send notification: %s", e)
        return False


def send_notifications(notif_cfg: Optional[Dict[str, Any]], watcher: str,
                       image: ImageDescriptor, new_version: str) -> None:
    """Dispatch an update to all configured channels.

    Safe to call unconditionally: returns at once when notif_cfg is empty.
    """
    if not notif_cfg:
        return

    payload = build_payload(watcher, image, new_version)

    ntfy_cfg = notif_cfg.get('ntfy')
    if ntfy_cfg and ntfy_cfg.get('url'):
        try:
            send_ntfy(ntfy_cfg, payload)
        except Exception as e:
            logger.warning("ntfy: unexpected error: %s", e)

    webhook_cfg = notif_cfg.get('webhook')
    if webhook_cfg and webhook_cfg.get('url'):
        try:
            send_webhook(webhook_cfg, payload)
        except Exception as e:
            logger.warning("webhook: unexpected error: %s", e)


def make_dispatcher(notif_cfg: Optional[Dict[str, Any]],
                    watcher: str) -> Callable[[ImageDescriptor, str], None]:
    """Bind the notification config to a watcher's update callback."""
    def dispatch(image: ImageDescriptor, new_version: str) -> None:
        send_notifications(notif_cfg, watcher, image, new_version)
    return dispatch
