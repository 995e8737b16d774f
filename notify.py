import logging

import requests
import requests.exceptions

import config
from core import EventNotFoundError
from store import parse_iso

logger = logging.getLogger(__name__)

TIMEOUT = 15
HEADERS = {
    'Content-Type': 'application/json',
    'User-Agent': 'service-timer/1.0',
}


class NotificationError(Exception):
    pass


def build_message(member, event, section):
    when = parse_iso(event['date']).strftime('%d/%m/%Y %H:%M')
    minutes = (section.get('duration') or 0) // 60
    return (f"Bonjour {member['full_name']}, vous intervenez au culte '{event['title']}' "
            f"du {when} : {section['title']} ({minutes} min).")


def collect_recipients(store, event_id):
    """Pairs of (member, section) for every assigned speaker with a phone number."""
    members = {m['id']: m for m in store.select('members')}
    recipients = []
    for section in store.list_sections(event_id):
        member = members.get(section.get('member_id'))
        if member and member.get('phone'):
            recipients.append((member, section))
    return recipients


def send_message(phone, text, webhook_url=None, token=None, session=None):
    """POST one message to the gateway. Raises requests exceptions on failure."""
    headers = dict(HEADERS)
    token = token or config.NOTIFY_API_TOKEN
    if token:
        headers['Authorization'] = f"Bearer {token}"
    http = session or requests
    resp = http.post(webhook_url, json={'to': phone, 'message': text}, headers=headers, timeout=TIMEOUT)
    resp.raise_for_status()
    return resp


def notify_speakers(store, event_id, webhook_url=None, token=None, session=None):
    """Tell every assigned speaker of an event what and when they speak.

    Returns counts of ``sent`` and ``failed`` messages; one failing recipient
    does not stop the others.
    """
    webhook_url = webhook_url or config.NOTIFY_WEBHOOK_URL
    if not webhook_url:
        raise NotificationError("NOTIFY_WEBHOOK_URL is not configured")
    event = store.get('events', event_id)
    if event is None:
        raise EventNotFoundError(event_id)

    sent, failed = 0, []
    for member, section in collect_recipients(store, event_id):
        try:
            send_message(member['phone'], build_message(member, event, section), webhook_url, token, session)
            sent += 1
        except requests.exceptions.RequestException as e:
            logger.warning("Notification to %s failed: %s", member['full_name'], e)
            failed.append(member['id'])

    logger.info("Notified %s speaker(s) for event %s, %s failed", sent, event_id, len(failed))
    return {'success': not failed, 'sent': sent, 'failed': failed}
