import json
import logging
import queue
import sys

from flask import Flask, Response, jsonify, redirect, request, stream_with_context, url_for

import config
import core
import display
import notify
import schedule
from store import RowNotFoundError, StaleWriteError, Store, StoreError

# --- LOGGING ---
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
root_logger = logging.getLogger()
root_logger.handlers.clear()
root_logger.setLevel(config.LOG_LEVEL)
root_logger.addHandler(handler)

logger = logging.getLogger(__name__)

STREAM_KEEPALIVE_SECONDS = 15

app = Flask(__name__)


def get_store():
    """Store shared by every request, created on first use."""
    store = app.config.get('STORE')
    if store is None:
        store = Store(config.DATA_DIR)
        app.config['STORE'] = store
    return store


def get_clock():
    return app.config.get('CLOCK')


def controller_for(event_id):
    return core.Controller(get_store(), event_id, clock=get_clock())


def payload():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def expected_version():
    value = payload().get('expected_version')
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise core.ValidationError(f"Invalid expected_version: {value!r}") from None


# --- ERROR HANDLING ---

@app.errorhandler(core.ValidationError)
def handle_validation_error(e):
    return jsonify({'success': False, 'error': str(e)}), 400


@app.errorhandler(core.InvalidTransitionError)
@app.errorhandler(StaleWriteError)
def handle_conflict(e):
    return jsonify({'success': False, 'error': str(e)}), 409


@app.errorhandler(core.EventNotFoundError)
@app.errorhandler(RowNotFoundError)
def handle_not_found(e):
    return jsonify({'success': False, 'error': str(e)}), 404


@app.errorhandler(notify.NotificationError)
def handle_notification_error(e):
    return jsonify({'success': False, 'error': str(e)}), 503


@app.errorhandler(StoreError)
def handle_store_error(e):
    logger.error("Storage error: %s", e)
    return jsonify({'success': False, 'error': 'Storage error, please retry the action.'}), 500


# --- LIVE: TABLET ---

@app.route('/')
def index():
    """Redirects base URL to the stage state."""
    return redirect(url_for('stage_state'))


@app.route('/api/live', methods=['GET'])
def live_state():
    """Event the tablet drives: ?event_id=..., else playing, upcoming or latest."""
    event_id = request.args.get('event_id')
    if not event_id:
        clock = get_clock()
        event = display.discover_event(get_store(), clock() if clock else None, fallback_latest=True)
        if event is None:
            return jsonify({'success': True, 'event': None})
        event_id = event['id']
    state = controller_for(event_id).state()
    return jsonify({'success': True, **state})


@app.route('/api/events/<event_id>/play', methods=['POST'])
def play_route(event_id):
    """Start, resume, or restart a finished event from its first section."""
    event = controller_for(event_id).play(expected_version())
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>/pause', methods=['POST'])
def pause_route(event_id):
    event = controller_for(event_id).pause(expected_version())
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>/toggle', methods=['POST'])
def toggle_route(event_id):
    """The tablet's Go button."""
    event = controller_for(event_id).toggle(expected_version())
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>/advance', methods=['POST'])
def advance_route(event_id):
    result = controller_for(event_id).advance(bool(payload().get('confirm')), expected_version())
    return jsonify({'success': True, **result})


@app.route('/api/events/<event_id>/unplanned', methods=['POST'])
def unplanned_route(event_id):
    section = controller_for(event_id).insert_unplanned(payload().get('title'))
    return jsonify({'success': True, 'section': section}), 201


@app.route('/api/events/<event_id>/message', methods=['POST'])
def broadcast_route(event_id):
    event = controller_for(event_id).broadcast_message(payload().get('message'))
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>/message', methods=['DELETE'])
def clear_message_route(event_id):
    event = controller_for(event_id).clear_message()
    return jsonify({'success': True, 'event': event})


@app.route('/api/events/<event_id>/summary', methods=['GET'])
def summary_route(event_id):
    store = get_store()
    if store.get('events', event_id) is None:
        raise core.EventNotFoundError(event_id)
    return jsonify({'success': True, 'summary': core.summarize_event(store.list_sections(event_id))})


@app.route('/api/events/<event_id>/notify', methods=['POST'])
def notify_route(event_id):
    result = notify.notify_speakers(get_store(), event_id)
    return jsonify(result), 200 if result['success'] else 502


# --- LIVE: STAGE ---

@app.route('/api/stage', methods=['GET'])
def stage_state():
    """One-shot view of what the stage screen shows right now."""
    store = get_store()
    clock = get_clock()
    now = clock() if clock else None
    event = display.discover_event(store, now)
    sections = store.list_sections(event['id']) if event else []
    return jsonify(display.build_view(event, sections, now))


@app.route('/api/stage/stream', methods=['GET'])
def stage_stream():
    """Server-Sent Events: one frame per store change and per second while playing."""
    frames = queue.Queue()
    stage = display.StageDisplay(get_store(), frames.put, clock=get_clock())

    def generate():
        stage.start()
        try:
            while True:
                try:
                    view = frames.get(timeout=STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(view)}\n\n"
        finally:
            stage.close()

    return Response(stream_with_context(generate()), mimetype='text/event-stream')


# --- EVENTS & SECTIONS ---

@app.route('/api/events', methods=['GET'])
def list_events_route():
    return jsonify({'success': True, 'events': schedule.list_events(get_store())})


@app.route('/api/events', methods=['POST'])
def create_event_route():
    data = payload()
    event = schedule.create_event(get_store(), data.get('title'), data.get('date'), data.get('template_id'))
    return jsonify({'success': True, 'event': event}), 201


@app.route('/api/events/<event_id>', methods=['GET'])
def get_event_route(event_id):
    store = get_store()
    event = store.get('events', event_id)
    if event is None:
        raise core.EventNotFoundError(event_id)
    return jsonify({'success': True, 'event': event, 'sections': store.list_sections(event_id)})


@app.route('/api/events/<event_id>', methods=['DELETE'])
def delete_event_route(event_id):
    schedule.delete_event(get_store(), event_id)
    return jsonify({'success': True})


@app.route('/api/events/<event_id>/sections', methods=['POST'])
def add_section_route(event_id):
    data = payload()
    section = schedule.add_section(
        get_store(), event_id, data.get('title'),
        duration=data.get('duration', 0),
        section_type=data.get('type', 'GENERIC'),
        member_id=data.get('member_id'),
        notes=data.get('notes'),
    )
    return jsonify({'success': True, 'section': section}), 201


@app.route('/api/events/<event_id>/sections/order', methods=['PUT'])
def reorder_sections_route(event_id):
    sections = schedule.reorder_sections(get_store(), event_id, payload().get('section_ids') or [])
    return jsonify({'success': True, 'sections': sections})


@app.route('/api/sections/<section_id>', methods=['PATCH'])
def update_section_route(section_id):
    section = schedule.update_section(get_store(), section_id, payload())
    return jsonify({'success': True, 'section': section})


@app.route('/api/sections/<section_id>', methods=['DELETE'])
def delete_section_route(section_id):
    schedule.delete_section(get_store(), section_id)
    return jsonify({'success': True})


# --- TEMPLATES ---

@app.route('/api/templates', methods=['GET'])
def list_templates_route():
    return jsonify({'success': True, 'templates': schedule.list_templates(get_store())})


@app.route('/api/templates', methods=['POST'])
def create_template_route():
    data = payload()
    template = schedule.create_template(get_store(), data.get('name'), data.get('description', ''), data.get('items'))
    return jsonify({'success': True, 'template': template}), 201


@app.route('/api/templates/seed', methods=['POST'])
def seed_template_route():
    return jsonify({'success': True, 'template': schedule.seed_sunday_template(get_store())})


@app.route('/api/templates/<template_id>', methods=['GET'])
def get_template_route(template_id):
    template = schedule.get_template(get_store(), template_id)
    if template is None:
        return jsonify({'success': False, 'error': 'Template not found'}), 404
    return jsonify({'success': True, 'template': template})


@app.route('/api/templates/<template_id>/items', methods=['PUT'])
def replace_template_items_route(template_id):
    store = get_store()
    if store.get('templates', template_id) is None:
        return jsonify({'success': False, 'error': 'Template not found'}), 404
    items = schedule.replace_template_items(store, template_id, payload().get('items') or [])
    return jsonify({'success': True, 'items': items})


@app.route('/api/templates/<template_id>', methods=['DELETE'])
def delete_template_route(template_id):
    schedule.delete_template(get_store(), template_id)
    return jsonify({'success': True})


# --- MEMBERS & ACTIVITIES ---

@app.route('/api/members', methods=['GET'])
def list_members_route():
    return jsonify({'success': True, 'members': schedule.list_members(get_store(), request.args.get('q'))})


@app.route('/api/members', methods=['POST'])
def create_member_route():
    data = payload()
    member = schedule.create_member(
        get_store(), data.get('full_name'),
        role=data.get('role', config.DEFAULT_MEMBER_ROLE),
        phone=data.get('phone', ''),
        matricule=data.get('matricule'),
    )
    return jsonify({'success': True, 'member': member}), 201


@app.route('/api/members/<member_id>', methods=['DELETE'])
def delete_member_route(member_id):
    schedule.delete_member(get_store(), member_id)
    return jsonify({'success': True})


@app.route('/api/activities', methods=['GET'])
def list_activities_route():
    return jsonify({'success': True, 'activities': schedule.list_activities(get_store())})


@app.route('/api/activities', methods=['POST'])
def create_activity_route():
    data = payload()
    activity = schedule.create_activity(
        get_store(), data.get('title'),
        activity_type=data.get('type', 'GENERIC'),
        default_duration=data.get('default_duration', 300),
    )
    return jsonify({'success': True, 'activity': activity}), 201


@app.route('/api/activities/<activity_id>', methods=['DELETE'])
def delete_activity_route(activity_id):
    schedule.delete_activity(get_store(), activity_id)
    return jsonify({'success': True})


@app.route('/api/stats', methods=['GET'])
def stats_route():
    return jsonify({'success': True, 'stats': schedule.compute_stats(get_store())})


if __name__ == '__main__':
    app.run(debug=False, host=config.HOST, port=config.PORT, threaded=True)
