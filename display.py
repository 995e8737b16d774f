"""Stage display: a read-only subscriber that renders the live timer.

Two inputs feed ``render()``: change messages from the store and the local
one-second tick. Neither ever writes back to the store.
"""
import logging
import threading
from datetime import datetime

import config
from core import TIMEZONE, LiveTicker, derive_live_state, format_time, summarize_event
from store import AmbiguousResultError

logger = logging.getLogger(__name__)

OFFLINE = 'offline'
LIVE = 'live'
FINISHED_VIEW = 'finished'


def discover_event(store, now=None, fallback_latest=False):
    """PLAYING event first, else the nearest upcoming PLANNED one.

    The tablet passes ``fallback_latest`` to land on the most recent event
    when nothing is playing or upcoming; the stage shows nothing instead.
    """
    try:
        playing = store.find_playing_event()
    except AmbiguousResultError as e:
        logger.warning("%s; showing the earliest one", e)
        candidates = store.select('events', order_by='date', status=config.PLAYING)
        playing = candidates[0] if candidates else None
    if playing:
        return playing
    upcoming = store.next_planned_event(now)
    if upcoming or not fallback_latest:
        return upcoming
    latest = store.select('events', order_by='date', descending=True)
    return latest[0] if latest else None


def active_section(event, sections):
    index = (event or {}).get('current_section_index') or 0
    return sections[index] if 0 <= index < len(sections) else None


def build_view(event, sections, now=None, default_duration=config.DEFAULT_SECTION_DURATION):
    """Pure view model for one event at ``now``."""
    if event is None:
        return {'view': OFFLINE}

    if event.get('status') == config.FINISHED:
        return {
            'view': FINISHED_VIEW,
            'event_id': event['id'],
            'title': event.get('title'),
            'summary': summarize_event(sections),
        }

    section = active_section(event, sections)
    is_count_up = bool(section and section.get('is_unplanned'))
    planned = default_duration if section is None or section.get('duration') is None else section['duration']
    live = derive_live_state(event, planned, is_count_up=is_count_up, now=now)
    index = event.get('current_section_index') or 0
    following = sections[index + 1] if index + 1 < len(sections) else None

    return {
        'view': LIVE,
        'event_id': event['id'],
        'title': event.get('title'),
        'date': event.get('date'),
        'status': live['status'],
        'current_section': section,
        'next_section': following,
        'time_left': live['time_left'],
        'is_overtime': live['is_overtime'],
        'is_count_up': is_count_up,
        'formatted_time': live['formatted_time'],
        # Count-up sections show elapsed time without a sign
        'display_time': format_time(abs(live['time_left'])) if is_count_up else live['formatted_time'],
        'stage_message': event.get('stage_message'),
    }


class StageDisplay:
    """Follows one event and pushes a fresh view to ``on_render``."""

    def __init__(self, store, on_render, clock=None, tick_interval=config.TICK_INTERVAL):
        self.store = store
        self.on_render = on_render
        self.clock = clock or (lambda: datetime.now(TIMEZONE))
        self.event = None
        self.sections = []
        self._lock = threading.RLock()
        self._ticker = LiveTicker(tick_interval, self.render)
        self._discovery = None
        self._event_sub = None
        self._sections_sub = None
        self._closed = False

    def start(self):
        self._discovery = self.store.subscribe('events', self._on_discovery, status=config.PLAYING)
        self._follow(discover_event(self.store, self.clock()))
        return self

    def close(self):
        with self._lock:
            self._closed = True
            self._ticker.cancel()
            for subscription in (self._discovery, self._event_sub, self._sections_sub):
                if subscription is not None:
                    subscription.unsubscribe()
            self._discovery = self._event_sub = self._sections_sub = None

    # --- Inputs ---

    def _follow(self, event):
        with self._lock:
            if self._closed:
                return
            if self._event_sub is not None:
                self._event_sub.unsubscribe()
                self._sections_sub.unsubscribe()
                self._event_sub = self._sections_sub = None
            self.event = event
            self.sections = self.store.list_sections(event['id']) if event else []
            if event is not None:
                self._event_sub = self.store.subscribe('events', self._on_event, id=event['id'])
                self._sections_sub = self.store.subscribe('sections', self._on_sections, event_id=event['id'])
            logger.info("Stage following event %s", event['id'] if event else None)
        self._sync_ticker()
        self.render()

    def _on_discovery(self, payload):
        new = payload['new']
        if new is None:
            return
        with self._lock:
            same = self.event is not None and self.event['id'] == new['id']
        if not same:
            self._follow(new)

    def _on_event(self, payload):
        if payload['type'] == 'DELETE':
            self._follow(discover_event(self.store, self.clock()))
            return
        with self._lock:
            if self._closed:
                return
            self.event = {**(self.event or {}), **payload['new']}
        self._sync_ticker()
        self.render()

    def _on_sections(self, payload):
        with self._lock:
            if self._closed or self.event is None:
                return
            self.sections = self.store.list_sections(self.event['id'])
        self.render()

    def _sync_ticker(self):
        with self._lock:
            playing = not self._closed and self.event is not None and self.event.get('status') == config.PLAYING
        if playing:
            self._ticker.start()
        else:
            self._ticker.cancel()

    @property
    def ticking(self):
        return self._ticker.running

    # --- Output ---

    def view(self):
        with self._lock:
            return build_view(self.event, list(self.sections), self.clock())

    def render(self):
        if self._closed:
            return None
        view = self.view()
        self.on_render(view)
        return view
