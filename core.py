import logging
import math
import threading
from datetime import datetime

import pytz

import config
from store import parse_iso, to_iso

logger = logging.getLogger(__name__)

# Define UTC timezone for consistency
TIMEZONE = pytz.utc


class LiveCycleError(Exception):
    """Base class for controller failures scoped to one action."""


class ValidationError(LiveCycleError):
    pass


class EventNotFoundError(LiveCycleError):
    def __init__(self, event_id):
        super().__init__(f"Event '{event_id}' not found")
        self.event_id = event_id


class InvalidTransitionError(LiveCycleError):
    def __init__(self, action, status):
        super().__init__(f"Cannot {action} an event that is {status}")
        self.action = action
        self.status = status


# --- Live-Cycle Deriver ---

def format_time(seconds):
    """Render signed seconds as ±MM:SS."""
    abs_seconds = abs(int(seconds))
    sign = '-' if seconds < 0 else ''
    return f"{sign}{abs_seconds // 60:02d}:{abs_seconds % 60:02d}"


def initial_duration_for(event, default_duration):
    initial = event.get('section_timer_initial_duration')
    if initial is None:
        return default_duration
    if event.get('status', config.PLANNED) == config.PLANNED and initial == 0:
        return default_duration
    return initial


def derive_live_state(event, default_duration=config.DEFAULT_SECTION_DURATION, is_count_up=False, now=None):
    """Compute the countdown shown for an event at ``now``.

    Always derived from the stored start timestamp, never from a previous
    result, so repeated calls cannot drift.
    """
    if not event:
        return {
            'status': None,
            'time_left': default_duration,
            'is_overtime': False,
            'formatted_time': format_time(default_duration),
        }

    status = event.get('status') or config.PLANNED
    initial = initial_duration_for(event, default_duration)
    timer_start = event.get('section_timer_start')

    if status == config.PLAYING and timer_start:
        now = now or datetime.now(TIMEZONE)
        elapsed = math.floor((now - parse_iso(timer_start)).total_seconds())
        time_left = initial - elapsed
        is_overtime = False if is_count_up else time_left < 0
    else:
        time_left = initial or default_duration
        is_overtime = False

    return {
        'status': status,
        'time_left': time_left,
        'is_overtime': is_overtime,
        'formatted_time': format_time(time_left),
    }


def summarize_event(sections):
    """Planned vs actual totals for a finished event."""
    total_planned = sum(s.get('duration') or 0 for s in sections)
    total_actual = sum(s.get('actual_duration') or 0 for s in sections)
    breakdown = [{
        'id': s.get('id'),
        'title': s.get('title'),
        'duration': s.get('duration') or 0,
        'actual_duration': s.get('actual_duration'),
        'delta': (s.get('actual_duration') or 0) - (s.get('duration') or 0),
        'is_unplanned': bool(s.get('is_unplanned')),
    } for s in sections]
    return {
        'total_planned': total_planned,
        'total_actual': total_actual,
        'difference': total_actual - total_planned,
        'on_time': total_actual <= total_planned,
        'unplanned_count': sum(1 for s in sections if s.get('is_unplanned')),
        'sections': breakdown,
    }


class LiveTicker:
    """Calls ``callback`` every ``interval`` seconds until cancelled.

    Each tick re-arms a fresh ``threading.Timer``; nothing is scheduled after
    ``cancel()``. Every ``start()``/``cancel()`` opens a new generation, and a
    tick only re-arms if its generation is still the current one.
    """

    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self._timer = None
        self._lock = threading.Lock()
        self._running = False
        self._generation = 0

    @property
    def running(self):
        return self._running

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self._generation += 1
            self._arm(self._generation)

    def _arm(self, generation):
        self._timer = threading.Timer(self.interval, self._tick, args=(generation,))
        self._timer.daemon = True
        self._timer.start()

    def _tick(self, generation):
        with self._lock:
            if not self._running or generation != self._generation:
                return
        try:
            self.callback()
        except Exception:
            logger.exception("Ticker callback failed")
        with self._lock:
            if self._running and generation == self._generation:
                self._arm(generation)

    def cancel(self):
        with self._lock:
            self._running = False
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


# --- Controller Surface ---

class Controller:
    """State transitions issued by the tablet for one event.

    Every action reads the current row, derives the live state at ``now`` and
    overwrites the affected fields. Concurrent controllers are not coordinated:
    the last write wins.
    """

    def __init__(self, store, event_id, clock=None, default_duration=config.DEFAULT_SECTION_DURATION):
        self.store = store
        self.event_id = event_id
        self.clock = clock or (lambda: datetime.now(TIMEZONE))
        self.default_duration = default_duration

    # --- Reads ---

    def _event(self):
        event = self.store.get('events', self.event_id)
        if event is None:
            raise EventNotFoundError(self.event_id)
        return event

    def _sections(self):
        return self.store.list_sections(self.event_id)

    def _active(self, event, sections):
        index = event.get('current_section_index') or 0
        return sections[index] if 0 <= index < len(sections) else None

    def _planned_duration(self, section):
        if section is None or section.get('duration') is None:
            return self.default_duration
        return section['duration']

    def _live(self, event, section, now):
        return derive_live_state(
            event,
            self._planned_duration(section),
            is_count_up=bool(section and section.get('is_unplanned')),
            now=now,
        )

    def state(self):
        event = self._event()
        sections = self._sections()
        active = self._active(event, sections)
        return {
            'event': event,
            'sections': sections,
            'current_section': active,
            'live': self._live(event, active, self.clock()),
        }

    def _write(self, changes, expected_version=None):
        return self.store.update('events', self.event_id, changes, expected_version=expected_version)

    # --- Actions ---

    def play(self, expected_version=None):
        """Start or resume the timer."""
        now = self.clock()
        event = self._event()
        sections = self._sections()
        changes = {}

        if event['status'] in (config.PLANNED, config.FINISHED):
            changes['current_section_index'] = 0
            duration = self._planned_duration(sections[0] if sections else None)
        else:
            live = self._live(event, self._active(event, sections), now)
            duration = live['time_left']

        changes.update({
            'status': config.PLAYING,
            'section_timer_start': to_iso(now),
            'section_timer_initial_duration': duration,
        })
        logger.info("Event %s playing with %ss on the clock", self.event_id, duration)
        return self._write(changes, expected_version)

    def pause(self, expected_version=None):
        """Freeze the remaining time, overtime included."""
        now = self.clock()
        event = self._event()
        if event['status'] != config.PLAYING:
            raise InvalidTransitionError('pause', event['status'])
        live = self._live(event, self._active(event, self._sections()), now)
        logger.info("Event %s paused at %s", self.event_id, live['formatted_time'])
        return self._write({
            'status': config.PAUSED,
            'section_timer_start': None,
            'section_timer_initial_duration': live['time_left'],
        }, expected_version)

    def toggle(self, expected_version=None):
        """Single Go button: pause while playing, play otherwise."""
        if self._event()['status'] == config.PLAYING:
            return self.pause(expected_version)
        return self.play(expected_version)

    def advance(self, confirm=False, expected_version=None):
        """Close the active section and move on.

        Returns a dict with ``outcome`` one of ``noop``, ``needs_confirmation``,
        ``advanced`` or ``finished`` and the resulting ``event``.
        """
        now = self.clock()
        event = self._event()
        if event['status'] == config.FINISHED:
            raise InvalidTransitionError('advance', event['status'])
        sections = self._sections()
        if not sections:
            return {'outcome': 'noop', 'event': event}

        index = event.get('current_section_index') or 0
        current = self._active(event, sections)
        if current is not None:
            live = self._live(event, current, now)
            actual = (current.get('duration') or 0) - live['time_left']
            self.store.update('sections', current['id'], {'actual_duration': actual})
            logger.info("Section '%s' closed after %ss", current.get('title'), actual)

        if index >= len(sections) - 1:
            if not confirm:
                return {'outcome': 'needs_confirmation', 'event': self._event()}
            event = self._write({
                'status': config.FINISHED,
                'section_timer_start': None,
                'stage_message': None,
                'stage_message_expires_at': None,
            }, expected_version)
            logger.info("Event %s finished", self.event_id)
            return {'outcome': 'finished', 'event': event}

        next_section = sections[index + 1]
        event = self._write({
            'current_section_index': index + 1,
            'status': config.PLAYING,
            'section_timer_start': to_iso(now),
            'section_timer_initial_duration': self._planned_duration(next_section),
        }, expected_version)
        return {'outcome': 'advanced', 'event': event}

    def insert_unplanned(self, title):
        """Insert a count-up section right after the active one.

        Subsequent sections are shifted one by one before the insert; a failure
        halfway leaves the order with a gap or a collision.
        """
        title = (title or '').strip()
        if not title:
            raise ValidationError("Unplanned section needs a title")
        event = self._event()
        sections = self._sections()
        current = self._active(event, sections)
        new_index = current['order_index'] + 1 if current else len(sections)

        for section in sorted(sections, key=lambda s: s['order_index'], reverse=True):
            if section['order_index'] >= new_index:
                self.store.update('sections', section['id'], {'order_index': section['order_index'] + 1})

        inserted = self.store.insert('sections', {
            'event_id': self.event_id,
            'title': title,
            'duration': 0,
            'actual_duration': None,
            'is_unplanned': True,
            'order_index': new_index,
            'type': config.UNPLANNED_TYPE,
            'member_id': None,
            'notes': None,
        })
        logger.info("Unplanned section '%s' inserted at %s", title, new_index)
        return inserted

    def broadcast_message(self, text):
        text = (text or '').strip()
        if not text:
            raise ValidationError("Stage message cannot be empty")
        return self._write({'stage_message': text, 'stage_message_expires_at': None})

    def clear_message(self):
        return self._write({'stage_message': None, 'stage_message_expires_at': None})
