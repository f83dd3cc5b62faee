import os
import json
import logging
import pytz
from dotenv import load_dotenv

# Załaduj zmienne środowiskowe z pliku .env
load_dotenv(override=True)

# Strefa czasowa dla wszystkich zapisywanych dat (UK)
TIMEZONE = pytz.timezone(os.getenv('TIMEZONE', 'Europe/London'))

# Domyślny serwer IMAP, jeśli konto go nie podaje
DEFAULT_IMAP_HOST = 'imap.gmail.com'
DEFAULT_IMAP_PORT = 993

# ✅ KONFIGURACJA SKANOWANIA SKRZYNEK
EMAIL_CHECK_SETTINGS = {
    'days_back': 3,                     # Okno wstecz (nie polegamy tylko na UNSEEN)
    'max_emails_per_account': 100,      # Maksymalna liczba emaili na konto (najnowsze)
    'imap_timeout': 30,                 # Timeout połączenia IMAP w sekundach
    'max_parallel_accounts': 4,         # Ile kont sprawdzamy jednocześnie
    'mark_as_read': True,               # Oznaczaj rozliczone emaile jako przeczytane
    'sender_domains': [                 # Nadawcy powiadomień InPost
        'inpost.co.uk',
        'inpost.pl',
        'inpost.eu',
    ],
}

# Ustawienia arkusza Google (rejestr przesyłek)
SPREADSHEET_ID = os.getenv('SPREADSHEET_ID')
SHEET_NAME = os.getenv('SHEET_NAME', 'Shipments')
SERVICE_ACCOUNT_FILE = os.getenv('SERVICE_ACCOUNT_FILE', 'service_account.json')

# --- TELEGRAM CONFIG ---
TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN', '')
TELEGRAM_ADMIN_CHAT_ID = os.getenv('TELEGRAM_ADMIN_CHAT_ID')
TELEGRAM_TIMEOUT = int(os.getenv('TELEGRAM_TIMEOUT', '10'))

# Ile godzin klient ma na odbiór paczki (przypomnienie w wiadomości)
PICKUP_EXPIRY_HOURS = int(os.getenv('PICKUP_EXPIRY_HOURS', '48'))

# Interwał sprawdzania (w minutach)
CHECK_INTERVAL = int(os.getenv('CHECK_INTERVAL', '5'))

# Health check / ręczne odświeżanie
HEALTH_CHECK_HOST = os.getenv('HEALTH_CHECK_HOST', 'localhost')
HEALTH_CHECK_PORT = int(os.getenv('HEALTH_CHECK_PORT', '8081'))

LOG_FILE = "inpost_tracker.log"
STATE_FILE = "app_state.json"


class MailAccount:
    """Dane dostępowe do jednej skrzynki IMAP"""

    def __init__(self, address, password, host=DEFAULT_IMAP_HOST, port=DEFAULT_IMAP_PORT):
        self.address = address
        self.password = password
        self.host = host or DEFAULT_IMAP_HOST
        self.port = int(port or DEFAULT_IMAP_PORT)

    def __repr__(self):
        # Hasło nigdy nie trafia do logów
        return f"MailAccount({self.address!r}, host={self.host!r}, port={self.port})"

    def __eq__(self, other):
        if not isinstance(other, MailAccount):
            return NotImplemented
        return (self.address, self.password, self.host, self.port) == \
            (other.address, other.password, other.host, other.port)


def _clean_accounts_json(raw_value):
    """Usuwa cudzysłowy i escape'y, które dokładają panele deploymentu"""
    cleaned = raw_value.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ('"', "'"):
        cleaned = cleaned[1:-1]
    return cleaned.replace('\\"', '"').replace("\\'", "'")


def get_imap_accounts(environ=None):
    """
    Zwraca listę skonfigurowanych kont pocztowych

    Obsługiwane formaty:
    1. IMAP_ACCOUNTS - tablica JSON [{"user", "password", "host", "port"}, ...]
    2. IMAP_USER / IMAP_PASSWORD / IMAP_HOST / IMAP_PORT - jedno konto

    Returns:
        list[MailAccount]: Konta do sprawdzenia (może być pusta)
    """
    env = os.environ if environ is None else environ

    accounts_json = env.get('IMAP_ACCOUNTS')
    if accounts_json:
        try:
            parsed = json.loads(_clean_accounts_json(accounts_json))
            if not isinstance(parsed, list):
                raise ValueError("IMAP_ACCOUNTS musi być tablicą JSON")

            accounts = []
            for entry in parsed:
                if not isinstance(entry, dict) or not entry.get('user') or not entry.get('password'):
                    logging.warning("⚠️ Pomijam wpis IMAP_ACCOUNTS bez user/password")
                    continue
                accounts.append(MailAccount(
                    entry['user'],
                    entry['password'],
                    entry.get('host'),
                    entry.get('port'),
                ))

            logging.info(f"📬 Wczytano {len(accounts)} kont(a) z IMAP_ACCOUNTS")
            return accounts
        except (ValueError, TypeError) as e:
            logging.error(f"❌ Nie można sparsować IMAP_ACCOUNTS: {e}")

    # Fallback - pojedyncze konto
    user = env.get('IMAP_USER')
    password = env.get('IMAP_PASSWORD')
    if user and password:
        return [MailAccount(user, password, env.get('IMAP_HOST'), env.get('IMAP_PORT'))]

    return []
