import logging
import random
from collections import Counter, defaultdict

import config
from core import EventNotFoundError, ValidationError
from store import parse_iso, to_iso

logger = logging.getLogger(__name__)

TOP_LIMIT = 5


# --- Helpers ---

def _require_title(value, what):
    value = (value or '').strip()
    if not value:
        raise ValidationError(f"{what} cannot be empty")
    return value


def _duration(value):
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid duration: {value!r}") from None
    if seconds < 0:
        raise ValidationError("Duration cannot be negative")
    return seconds


def _section_type(value):
    value = value or 'GENERIC'
    if value not in config.SECTION_TYPES:
        raise ValidationError(f"Unknown section type: {value}")
    return value


def _event_date(value):
    if value is None or value == '':
        raise ValidationError("Event date is required")
    try:
        return parse_iso(value)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r}") from None


def _rewrite_order(store, table, rows):
    """Give ``rows`` the indices 0..n-1 in list order."""
    for index, row in enumerate(rows):
        if row.get('order_index') != index:
            store.update(table, row['id'], {'order_index': index})


# --- Templates ---

def create_template(store, name, description='', items=None):
    """Create a template. Without ``items`` it starts from the default three."""
    template = store.insert('templates', {
        'name': _require_title(name, "Template name"),
        'description': description or '',
    })
    replace_template_items(store, template['id'], config.DEFAULT_TEMPLATE_ITEMS if items is None else items)
    logger.info("Template '%s' created", template['name'])
    return get_template(store, template['id'])


def seed_sunday_template(store):
    """Create the standard Sunday service template once."""
    existing = store.select('templates', name=config.SUNDAY_TEMPLATE['name'])
    if existing:
        return get_template(store, existing[0]['id'])
    return create_template(
        store,
        config.SUNDAY_TEMPLATE['name'],
        config.SUNDAY_TEMPLATE['description'],
        config.SUNDAY_TEMPLATE['items'],
    )


def list_templates(store):
    return store.select('templates', order_by='name')


def get_template(store, template_id):
    template = store.get('templates', template_id)
    if template is None:
        return None
    template['items'] = store.select('template_items', order_by='order_index', template_id=template_id)
    return template


def replace_template_items(store, template_id, items):
    """Replace every item of a template; list order becomes ``order_index``."""
    for old in store.select('template_items', template_id=template_id):
        store.delete('template_items', old['id'])
    for index, item in enumerate(items):
        store.insert('template_items', {
            'template_id': template_id,
            'order_index': index,
            'title': _require_title(item.get('title'), "Item title"),
            'duration': _duration(item.get('duration', 0)),
            'type': _section_type(item.get('type')),
        })
    return store.select('template_items', order_by='order_index', template_id=template_id)


def delete_template(store, template_id):
    for item in store.select('template_items', template_id=template_id):
        store.delete('template_items', item['id'])
    store.delete('templates', template_id)


# --- Events ---

def create_event(store, title, date, template_id=None):
    """Create a PLANNED event, copying the template items as its sections."""
    when = _event_date(date)
    event = store.insert('events', {
        'title': _require_title(title, "Event title"),
        'date': to_iso(when),
        'status': config.PLANNED,
        'current_section_index': 0,
        'section_timer_start': None,
        'section_timer_initial_duration': 0,
        'stage_message': None,
        'stage_message_expires_at': None,
    })

    if template_id:
        for item in store.select('template_items', order_by='order_index', template_id=template_id):
            store.insert('sections', {
                'event_id': event['id'],
                'title': item['title'],
                'duration': item['duration'],
                'actual_duration': None,
                'type': item['type'],
                'is_unplanned': False,
                'member_id': None,
                'notes': None,
                'order_index': item['order_index'],
            })
    logger.info("Event '%s' created for %s", event['title'], event['date'])
    return event


def list_events(store):
    return store.select('events', order_by='date', descending=True)


def delete_event(store, event_id):
    for section in store.list_sections(event_id):
        store.delete('sections', section['id'])
    store.delete('events', event_id)


def _require_event(store, event_id):
    event = store.get('events', event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    return event


# --- Sections (service builder) ---

def add_section(store, event_id, title, duration=0, section_type='GENERIC', member_id=None, notes=None):
    """Append a section at the end of the program."""
    _require_event(store, event_id)
    sections = store.list_sections(event_id)
    return store.insert('sections', {
        'event_id': event_id,
        'title': _require_title(title, "Section title"),
        'duration': _duration(duration),
        'actual_duration': None,
        'type': _section_type(section_type),
        'is_unplanned': False,
        'member_id': member_id,
        'notes': notes,
        'order_index': len(sections),
    })


EDITABLE_SECTION_FIELDS = ('title', 'duration', 'type', 'member_id', 'notes')


def update_section(store, section_id, changes):
    updates = {}
    for field in EDITABLE_SECTION_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == 'title':
            value = _require_title(value, "Section title")
        elif field == 'duration':
            value = _duration(value)
        elif field == 'type':
            value = _section_type(value)
        updates[field] = value
    return store.update('sections', section_id, updates)


def delete_section(store, section_id):
    section = store.delete('sections', section_id)
    _rewrite_order(store, 'sections', store.list_sections(section['event_id']))
    return section


def reorder_sections(store, event_id, section_ids):
    """Rewrite every ``order_index`` of the event to follow ``section_ids``."""
    sections = {s['id']: s for s in store.list_sections(event_id)}
    if set(section_ids) != set(sections) or len(section_ids) != len(sections):
        raise ValidationError("Reorder must list every section of the event exactly once")
    _rewrite_order(store, 'sections', [sections[sid] for sid in section_ids])
    return store.list_sections(event_id)


# --- Members ---

def generate_matricule(role):
    prefix = config.MEMBER_ROLES.get(role, config.DEFAULT_MATRICULE_PREFIX)
    return f"{prefix}-{random.randint(100, 999)}"


def create_member(store, full_name, role=config.DEFAULT_MEMBER_ROLE, phone='', matricule=None):
    if role not in config.MEMBER_ROLES:
        raise ValidationError(f"Unknown role: {role}")
    return store.insert('members', {
        'full_name': _require_title(full_name, "Member name"),
        'role': role,
        'phone': phone or '',
        'matricule': matricule or generate_matricule(role),
    })


def list_members(store, search=None):
    members = store.select('members', order_by='full_name')
    if not search:
        return members
    needle = search.lower()
    return [
        m for m in members
        if needle in m['full_name'].lower() or needle in (m.get('matricule') or '').lower()
    ]


def delete_member(store, member_id):
    for section in store.select('sections', member_id=member_id):
        store.update('sections', section['id'], {'member_id': None})
    store.delete('members', member_id)


# --- Activities ---

def create_activity(store, title, activity_type='GENERIC', default_duration=300):
    return store.insert('activities', {
        'title': _require_title(title, "Activity title"),
        'type': _section_type(activity_type),
        'default_duration': _duration(default_duration),
    })


def list_activities(store):
    return store.select('activities', order_by='title')


def delete_activity(store, activity_id):
    store.delete('activities', activity_id)


# --- Statistics ---

def compute_stats(store):
    """Dashboard figures across all events."""
    events = store.select('events')
    sections_by_event = defaultdict(list)
    for section in store.select('sections'):
        sections_by_event[section['event_id']].append(section)

    finished = [e for e in events if e['status'] == config.FINISHED]
    on_time = 0
    for event in finished:
        sections = sections_by_event[event['id']]
        planned = sum(s.get('duration') or 0 for s in sections)
        actual = sum(s.get('actual_duration') or 0 for s in sections)
        if actual <= planned:
            on_time += 1

    members = {m['id']: m['full_name'] for m in store.select('members')}
    speaker_counts = Counter(
        s['member_id'] for sections in sections_by_event.values() for s in sections if s.get('member_id')
    )
    type_times = Counter()
    for sections in sections_by_event.values():
        for s in sections:
            if s.get('type') and s.get('actual_duration'):
                type_times[s['type']] += s['actual_duration']

    return {
        'finished_count': len(finished),
        'on_time_count': on_time,
        'on_time_ratio': f"{on_time} / {len(finished)}",
        'top_speakers': [
            {'member_id': member_id, 'name': members.get(member_id, 'Inconnu'), 'count': count}
            for member_id, count in speaker_counts.most_common(TOP_LIMIT)
        ],
        'top_activities': [
            {'type': section_type, 'duration': duration}
            for section_type, duration in type_times.most_common(TOP_LIMIT)
        ],
    }
