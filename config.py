# config.py
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# --- LIVE TIMER DEFAULTS ---
# Fallback countdown (seconds) when the active section has no planned duration.
DEFAULT_SECTION_DURATION = int(os.getenv('DEFAULT_SECTION_DURATION', 300))
# Seconds between two local recomputations while an event is playing.
TICK_INTERVAL = float(os.getenv('TICK_INTERVAL', 1.0))

# --- EVENT LIFECYCLE ---
PLANNED = 'PLANNED'
PLAYING = 'PLAYING'
PAUSED = 'PAUSED'
FINISHED = 'FINISHED'
EVENT_STATUSES = (PLANNED, PLAYING, PAUSED, FINISHED)

SECTION_TYPES = ('GENERIC', 'SONG', 'SPEECH', 'VIDEO', 'unplanned')
UNPLANNED_TYPE = 'unplanned'

# --- MEMBERS ---
# Matricule prefix per role, e.g. a new PASTEUR gets 'PAS-482'.
MEMBER_ROLES = {
    'PASTEUR': 'PAS',
    'CHANTRE': 'CHA',
    'MODERATEUR': 'MOD',
    'RESPONSABLE': 'RES',
    'LEADER': 'LEA',
    'SERVITEUR': 'SER',
    'MEDIA': 'MED',
}
DEFAULT_MEMBER_ROLE = 'SERVITEUR'
DEFAULT_MATRICULE_PREFIX = 'MEM'

# --- TEMPLATES ---
# Items every freshly created template starts with.
DEFAULT_TEMPLATE_ITEMS = [
    {"title": "Louange", "duration": 20 * 60, "type": "SONG"},
    {"title": "Annonces", "duration": 5 * 60, "type": "SPEECH"},
    {"title": "Message", "duration": 30 * 60, "type": "SPEECH"},
]

# Standard Sunday service (08h15 - 11h10).
SUNDAY_TEMPLATE = {
    "name": "Culte Du Dimanche",
    "description": "Format standard hétérogène (08h15 - 11h10)",
    "items": [
        {"title": "ENTREE DE L'AUDITOIRE", "duration": 10 * 60, "type": "GENERIC"},
        {"title": "MODERATEUR CULTE (PRIERE D'OUVERTURE)", "duration": 10 * 60, "type": "SPEECH"},
        {"title": "LOUANGE ET ADORATION", "duration": 45 * 60, "type": "SONG"},
        {"title": "SAINTE CENE", "duration": 10 * 60, "type": "GENERIC"},
        {"title": "DIMES ET OFFRANDES", "duration": 10 * 60, "type": "GENERIC"},
        {"title": "ANNONCE", "duration": 10 * 60, "type": "SPEECH"},
        {"title": "INSTANT DE TRIBUS ET FDV", "duration": 10 * 60, "type": "GENERIC"},
        {"title": "MESSAGE ET MINISTERE", "duration": 60 * 60, "type": "SPEECH"},
        {"title": "DERNIERE ANNONCE ET PRESENTATION", "duration": 5 * 60, "type": "SPEECH"},
        {"title": "PRIERE DE FIN ET RENVOIE", "duration": 5 * 60, "type": "GENERIC"},
    ],
}

# --- STORAGE ---
# Directory holding the JSON snapshot. Empty means in-memory only.
DATA_DIR = os.getenv('SERVICE_TIMER_DATA_DIR', 'data')
SNAPSHOT_FILENAME = 'store.json'

# --- NOTIFICATIONS ---
NOTIFY_WEBHOOK_URL = os.getenv('NOTIFY_WEBHOOK_URL')
NOTIFY_API_TOKEN = os.getenv('NOTIFY_API_TOKEN')

# --- SERVER ---
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', 80))
