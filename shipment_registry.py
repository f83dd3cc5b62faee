import logging
from datetime import datetime
import config


TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def now_timestamp():
    """Aktualny czas w strefie z configu, w formacie zapisywanym w rejestrze"""
    return datetime.now(config.TIMEZONE).strftime(TIMESTAMP_FORMAT)


def normalize_tracking_number(tracking_number):
    if not tracking_number:
        return None
    return "".join(str(tracking_number).split()).upper()


class RegistryError(Exception):
    """Błąd zapisu/odczytu rejestru przesyłek"""


class DuplicateTrackingNumberError(RegistryError):
    """Próba utworzenia rekordu dla numeru, który już istnieje"""

    def __init__(self, tracking_number):
        super().__init__(f"Przesyłka {tracking_number} już istnieje w rejestrze")
        self.tracking_number = tracking_number


class StaleRecordError(RegistryError):
    """Wiersz rekordu zmienił się od odczytu (np. usunięty przez czyszczenie)"""


class ShipmentRecord:
    """
    Jedna fizyczna paczka w rejestrze.

    record_id to identyfikator w magazynie (w arkuszu - numer wiersza).
    Znaczniki *_delivered_at / *_recorded_at chronią przed ponownym wysłaniem kodu.
    """

    FIELDS = (
        "tracking_number",
        "owner_user_id",
        "notification_channel_id",
        "email_used",
        "pickup_code",
        "pickup_code_location",
        "pickup_code_delivered_at",
        "email_received_at",
        "dropoff_code",
        "dropoff_recipient_name",
        "dropoff_code_recorded_at",
        "created_at",
    )

    def __init__(self, record_id, tracking_number, **fields):
        unknown = set(fields) - set(self.FIELDS)
        if unknown:
            raise ValueError(f"Nieznane pola rekordu: {sorted(unknown)}")

        self.record_id = record_id
        self.tracking_number = normalize_tracking_number(tracking_number)
        for name in self.FIELDS[1:]:
            setattr(self, name, fields.get(name) or None)

    def apply(self, fields):
        """Nakłada zmiany na kopię w pamięci (po udanym zapisie)"""
        for name, value in fields.items():
            if name not in self.FIELDS or name == "tracking_number":
                raise ValueError(f"Pola {name} nie można aktualizować")
            setattr(self, name, value)
        return self

    def to_dict(self):
        data = {"record_id": self.record_id}
        for name in self.FIELDS:
            data[name] = getattr(self, name)
        return data

    def __repr__(self):
        return f"ShipmentRecord(id={self.record_id!r}, tracking_number={self.tracking_number!r})"


class LookupResult:
    """Wynik wyszukania przesyłki: NOT_FOUND, UNIQUE albo AMBIGUOUS"""

    NOT_FOUND = "not_found"
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"

    def __init__(self, status, tracking_number, record=None, match_count=0):
        self.status = status
        self.tracking_number = tracking_number
        self.record = record
        self.match_count = match_count

    @classmethod
    def not_found(cls, tracking_number):
        return cls(cls.NOT_FOUND, tracking_number)

    @classmethod
    def unique(cls, record):
        return cls(cls.UNIQUE, record.tracking_number, record=record, match_count=1)

    @classmethod
    def ambiguous(cls, tracking_number, match_count):
        # Brak rekordu - nie da się przypadkiem użyć "pierwszego z brzegu"
        return cls(cls.AMBIGUOUS, tracking_number, match_count=match_count)

    def is_not_found(self):
        return self.status == self.NOT_FOUND

    def is_unique(self):
        return self.status == self.UNIQUE

    def is_ambiguous(self):
        return self.status == self.AMBIGUOUS

    def __repr__(self):
        return f"LookupResult({self.status}, {self.tracking_number!r}, matches={self.match_count})"


def resolve_shipment(registry, tracking_number):
    """
    Znajduje dokładnie jedną przesyłkę o podanym numerze

    Args:
        registry: Magazyn z metodą find_by_tracking_number
        tracking_number: Numer przesyłki

    Returns:
        LookupResult: UNIQUE tylko gdy pasuje dokładnie jeden rekord
    """
    tracking_number = normalize_tracking_number(tracking_number)
    if not tracking_number:
        return LookupResult.not_found(tracking_number)

    records = registry.find_by_tracking_number(tracking_number)

    if not records:
        logging.warning(f"⚠️ Brak przesyłki {tracking_number} w rejestrze")
        return LookupResult.not_found(tracking_number)

    if len(records) > 1:
        ids = ", ".join(str(record.record_id) for record in records)
        logging.error(
            f"🚨 KRYTYCZNE: {len(records)} rekordy dla numeru {tracking_number} (id: {ids}) - "
            f"nie wysyłam kodu, sprawdź duplikaty w rejestrze"
        )
        return LookupResult.ambiguous(tracking_number, len(records))

    return LookupResult.unique(records[0])
