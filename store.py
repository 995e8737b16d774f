"""Shared record store.

Holds every table of the application as rows (plain dicts), answers point and
filtered queries, and pushes change payloads to subscribers. Writes are
unconditional overwrites of the given fields unless the caller passes an
``expected_version``, in which case the write only lands if nobody else wrote
the row in between.
"""
import copy
import json
import logging
import os
import threading
import uuid
from datetime import datetime

import pytz

import config

logger = logging.getLogger(__name__)

TIMEZONE = pytz.utc

TABLES = ('events', 'sections', 'templates', 'template_items', 'members', 'activities')

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'


class StoreError(Exception):
    """Base class for storage failures."""


class UnknownTableError(StoreError):
    def __init__(self, table):
        super().__init__(f"Unknown table '{table}'")
        self.table = table


class RowNotFoundError(StoreError):
    def __init__(self, table, row_id):
        super().__init__(f"No row '{row_id}' in '{table}'")
        self.table = table
        self.row_id = row_id


class AmbiguousResultError(StoreError):
    """Raised when a zero-or-one query matches several rows."""

    def __init__(self, table, filters, count):
        super().__init__(f"Expected at most one row in '{table}' for {filters}, found {count}")
        self.table = table
        self.filters = filters
        self.count = count


class StaleWriteError(StoreError):
    """Raised when a versioned write finds the row already moved on."""

    def __init__(self, table, row_id, expected, actual):
        super().__init__(f"Row '{row_id}' in '{table}' is at version {actual}, expected {expected}")
        self.table = table
        self.row_id = row_id
        self.expected = expected
        self.actual = actual


class PersistenceError(StoreError):
    """Raised when the snapshot cannot be written. The write is not applied."""

    def __init__(self, path, reason):
        super().__init__(f"Could not write snapshot '{path}': {reason}")
        self.path = path
        self.reason = reason


def utc_now():
    return datetime.now(TIMEZONE)


def to_iso(moment):
    """Serialize an aware datetime as ISO-8601 UTC."""
    if moment is None:
        return None
    return moment.astimezone(TIMEZONE).isoformat()


def parse_iso(value):
    """Parse an ISO-8601 string. Naive values are taken as UTC."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = TIMEZONE.localize(parsed)
    return parsed


def _matches(row, filters):
    return row is not None and all(row.get(key) == value for key, value in filters.items())


class Subscription:
    """Handle returned by ``Store.subscribe``."""

    def __init__(self, store, table, callback, filters):
        self._store = store
        self.table = table
        self.callback = callback
        self.filters = dict(filters)
        self.active = True

    def accepts(self, payload):
        row = payload['old'] if payload['type'] == DELETE else payload['new']
        return _matches(row, self.filters)

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._store._remove_subscription(self)


class Store:
    """Thread-safe table store with change subscriptions."""

    def __init__(self, data_dir=None):
        self._lock = threading.RLock()
        self._tables = {name: {} for name in TABLES}
        self._subscriptions = []
        self._path = None
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)
            self._path = os.path.join(data_dir, config.SNAPSHOT_FILENAME)
            self._load()

    # --- Persistence ---

    def _load(self):
        if not os.path.exists(self._path):
            return
        with open(self._path, 'r', encoding='utf-8') as f:
            snapshot = json.load(f)
        for name in TABLES:
            self._tables[name] = {row['id']: row for row in snapshot.get(name, [])}
        logger.info("Loaded store snapshot from %s", self._path)

    def _save(self, tables):
        if not self._path:
            return
        snapshot = {name: list(rows.values()) for name, rows in tables.items()}
        tmp_path = self._path + '.tmp'
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(snapshot, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.error("Snapshot write to %s failed: %s", self._path, e)
            raise PersistenceError(self._path, e) from e

    def _commit(self, table, rows):
        """Persist ``rows`` as the new content of ``table``, then swap it in."""
        self._save({**self._tables, table: rows})
        self._tables[table] = rows

    def _table(self, table):
        try:
            return self._tables[table]
        except KeyError:
            raise UnknownTableError(table) from None

    # --- Queries ---

    def get(self, table, row_id):
        with self._lock:
            row = self._table(table).get(row_id)
            return copy.deepcopy(row)

    def select(self, table, order_by=None, descending=False, **filters):
        with self._lock:
            rows = [copy.deepcopy(row) for row in self._table(table).values() if _matches(row, filters)]
        if order_by:
            # None sorts first ascending, last descending
            rows.sort(key=lambda row: (row.get(order_by) is not None, row.get(order_by)), reverse=descending)
        return rows

    def find_one(self, table, **filters):
        """Return the single row matching ``filters``, or None.

        Raises:
            AmbiguousResultError: more than one row matches.
        """
        rows = self.select(table, **filters)
        if len(rows) > 1:
            raise AmbiguousResultError(table, filters, len(rows))
        return rows[0] if rows else None

    # --- Writes ---

    def insert(self, table, row):
        with self._lock:
            rows = self._table(table)
            new = copy.deepcopy(row)
            new.setdefault('id', str(uuid.uuid4()))
            new.setdefault('version', 1)
            new.setdefault('created_at', to_iso(utc_now()))
            self._commit(table, {**rows, new['id']: new})
            result = copy.deepcopy(new)
        self._publish(table, INSERT, result, None)
        return result

    def update(self, table, row_id, changes, expected_version=None):
        """Overwrite ``changes`` on a row and bump its version.

        Raises:
            RowNotFoundError: the row does not exist.
            StaleWriteError: ``expected_version`` given and not current.
            PersistenceError: the snapshot write failed; nothing changed.
        """
        with self._lock:
            rows = self._table(table)
            current = rows.get(row_id)
            if current is None:
                raise RowNotFoundError(table, row_id)
            if expected_version is not None and current.get('version') != expected_version:
                raise StaleWriteError(table, row_id, expected_version, current.get('version'))
            old = copy.deepcopy(current)
            updated = {**old, **copy.deepcopy(changes), 'id': row_id, 'version': old.get('version', 0) + 1}
            self._commit(table, {**rows, row_id: updated})
            new = copy.deepcopy(updated)
        self._publish(table, UPDATE, new, old)
        return new

    def delete(self, table, row_id):
        with self._lock:
            rows = self._table(table)
            old = rows.get(row_id)
            if old is None:
                raise RowNotFoundError(table, row_id)
            self._commit(table, {key: row for key, row in rows.items() if key != row_id})
        self._publish(table, DELETE, None, old)
        return old

    # --- Subscriptions ---

    def subscribe(self, table, callback, **filters):
        """Call ``callback(payload)`` for every change in ``table`` matching ``filters``."""
        self._table(table)
        subscription = Subscription(self, table, callback, filters)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _publish(self, table, change_type, new, old):
        payload = {'type': change_type, 'table': table, 'new': new, 'old': old}
        with self._lock:
            targets = [s for s in self._subscriptions if s.table == table and s.accepts(payload)]
        for subscription in targets:
            if not subscription.active:
                continue
            try:
                subscription.callback(copy.deepcopy(payload))
            except Exception:
                logger.exception("Subscriber on '%s' failed for %s", table, change_type)

    # --- Repository helpers ---

    def find_playing_event(self):
        """The event currently PLAYING, or None. At most one is expected."""
        return self.find_one('events', status=config.PLAYING)

    def next_planned_event(self, now=None):
        """Nearest PLANNED event dated at or after ``now``."""
        now = now or utc_now()
        upcoming = [
            event for event in self.select('events', order_by='date', status=config.PLANNED)
            if event.get('date') and parse_iso(event['date']) >= now
        ]
        return upcoming[0] if upcoming else None

    def list_sections(self, event_id):
        return self.select('sections', order_by='order_index', event_id=event_id)
