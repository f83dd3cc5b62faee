import gspread
from gspread.exceptions import GSpreadException, WorksheetNotFound
import requests
import config
import logging
import threading
from shipment_registry import (
    ShipmentRecord, RegistryError, DuplicateTrackingNumberError, StaleRecordError,
    normalize_tracking_number, now_timestamp,
)


class Col:
    """Numery kolumn arkusza z przesyłkami (1 = A)"""
    TRACKING_NUMBER = 1
    USER_ID = 2
    CHAT_ID = 3
    EMAIL_USED = 4
    PICKUP_CODE = 5
    PICKUP_LOCATION = 6
    PICKUP_CODE_SENT_AT = 7
    EMAIL_RECEIVED_AT = 8
    SEND_CODE = 9
    SEND_CODE_RECIPIENT = 10
    SEND_CODE_RECORDED_AT = 11
    CREATED_AT = 12


HEADER = [
    "tracking_number", "user_id", "telegram_chat_id", "email_used",
    "pickup_code", "locker_id", "pickup_code_sent_at", "email_received_at",
    "send_code", "send_code_recipient", "send_code_recorded_at", "created_at",
]

# Pole rekordu -> kolumna arkusza
FIELD_COLUMNS = {
    "tracking_number": Col.TRACKING_NUMBER,
    "owner_user_id": Col.USER_ID,
    "notification_channel_id": Col.CHAT_ID,
    "email_used": Col.EMAIL_USED,
    "pickup_code": Col.PICKUP_CODE,
    "pickup_code_location": Col.PICKUP_LOCATION,
    "pickup_code_delivered_at": Col.PICKUP_CODE_SENT_AT,
    "email_received_at": Col.EMAIL_RECEIVED_AT,
    "dropoff_code": Col.SEND_CODE,
    "dropoff_recipient_name": Col.SEND_CODE_RECIPIENT,
    "dropoff_code_recorded_at": Col.SEND_CODE_RECORDED_AT,
    "created_at": Col.CREATED_AT,
}


class SheetsHandler:
    """
    Rejestr przesyłek w arkuszu Google.

    Jeden wiersz = jedna przesyłka, id rekordu = numer wiersza.
    Arkusz nie ma ograniczeń unikalności, więc insert sprawdza duplikaty
    pod lockiem, a lookup zawsze zwraca wszystkie pasujące wiersze.
    """

    def __init__(self, worksheet=None, limiters=None):
        self.spreadsheet = None
        self.worksheet = worksheet
        self.connected = worksheet is not None
        self.limiters = limiters
        self._insert_lock = threading.Lock()

    def connect(self):
        """Łączy z arkuszem Google Sheets (konto serwisowe)"""
        if self.connected:
            return True

        try:
            client = gspread.service_account(filename=config.SERVICE_ACCOUNT_FILE)
            self.spreadsheet = client.open_by_key(config.SPREADSHEET_ID)

            try:
                self.worksheet = self.spreadsheet.worksheet(config.SHEET_NAME)
            except WorksheetNotFound:
                logging.info(f"📄 Tworzę zakładkę '{config.SHEET_NAME}'")
                self.worksheet = self.spreadsheet.add_worksheet(
                    title=config.SHEET_NAME, rows=1000, cols=len(HEADER)
                )

            self._ensure_header()
            self.connected = True
            logging.info(f"✅ Połączono z arkuszem {config.SHEET_NAME}")
            return True
        except Exception as e:
            logging.error(f"❌ Błąd połączenia z Google Sheets: {e}")
            self.connected = False
            return False

    def _ensure_header(self):
        first_row = self.worksheet.row_values(1)
        if not first_row:
            self.worksheet.append_row(HEADER, value_input_option='RAW')
            logging.info("📝 Dodano nagłówek arkusza przesyłek")

    def _wait(self, limiter_name):
        if self.limiters:
            self.limiters.wait_for(limiter_name)

    def _read_all_rows(self):
        self._wait("sheets_read")
        try:
            return self.worksheet.get_all_values()
        except (GSpreadException, requests.RequestException) as e:
            raise RegistryError(f"Nie można odczytać arkusza: {e}") from e

    @staticmethod
    def _row_to_record(row_number, row):
        values = list(row) + [""] * (len(HEADER) - len(row))
        fields = {}
        for name, col in FIELD_COLUMNS.items():
            if name == "tracking_number":
                continue
            fields[name] = values[col - 1].strip() or None
        return ShipmentRecord(row_number, values[Col.TRACKING_NUMBER - 1], **fields)

    def _records(self):
        rows = self._read_all_rows()
        for row_number, row in enumerate(rows[1:], start=2):
            if row and row[0].strip():
                yield self._row_to_record(row_number, row)

    def find_by_tracking_number(self, tracking_number):
        """Zwraca WSZYSTKIE wiersze z danym numerem (0, 1 lub więcej)"""
        tracking_number = normalize_tracking_number(tracking_number)
        return [r for r in self._records() if r.tracking_number == tracking_number]

    def find_pending_deliveries(self):
        """Przesyłki z zapisanym kodem odbioru, czatem i bez potwierdzenia wysyłki"""
        return [
            r for r in self._records()
            if r.pickup_code and r.notification_channel_id and not r.pickup_code_delivered_at
        ]

    def insert(self, tracking_number, provenance=None):
        """
        Dodaje nową przesyłkę (bez właściciela i czatu)

        Args:
            tracking_number: Numer przesyłki
            provenance: Adres skrzynki, z której przyszedł mail

        Returns:
            ShipmentRecord: Utworzony rekord

        Raises:
            DuplicateTrackingNumberError: Numer już istnieje w arkuszu
        """
        tracking_number = normalize_tracking_number(tracking_number)

        with self._insert_lock:
            if self.find_by_tracking_number(tracking_number):
                raise DuplicateTrackingNumberError(tracking_number)

            row = [""] * len(HEADER)
            row[Col.TRACKING_NUMBER - 1] = tracking_number
            row[Col.EMAIL_USED - 1] = provenance or ""
            row[Col.CREATED_AT - 1] = now_timestamp()

            self._wait("sheets_write")
            try:
                self.worksheet.append_row(row, value_input_option='RAW')
            except (GSpreadException, requests.RequestException) as e:
                raise RegistryError(f"Nie można dodać przesyłki {tracking_number}: {e}") from e

            created = self.find_by_tracking_number(tracking_number)

        if len(created) > 1:
            # Ktoś inny dodał ten sam numer w międzyczasie
            raise DuplicateTrackingNumberError(tracking_number)
        if not created:
            raise RegistryError(f"Nie znaleziono dodanej przesyłki {tracking_number}")

        logging.info(f"➕ Dodano przesyłkę {tracking_number} w wierszu {created[0].record_id} (źródło: {provenance})")
        return created[0]

    def update(self, record, fields):
        """
        Zapisuje pola rekordu jednym żądaniem

        Zapis tylko gdy wiersz nadal zawiera ten sam numer przesyłki.

        Raises:
            StaleRecordError: Wiersz zawiera inny numer niż rekord
        """
        if not fields:
            return record

        unknown = set(fields) - set(FIELD_COLUMNS)
        if unknown or "tracking_number" in fields:
            raise ValueError(f"Nie można aktualizować pól: {sorted(unknown or ['tracking_number'])}")

        self._wait("sheets_read")
        try:
            current = self.worksheet.cell(record.record_id, Col.TRACKING_NUMBER).value
        except (GSpreadException, requests.RequestException) as e:
            raise RegistryError(f"Nie można odczytać wiersza {record.record_id}: {e}") from e

        if normalize_tracking_number(current) != record.tracking_number:
            raise StaleRecordError(
                f"Wiersz {record.record_id} zawiera {current!r} zamiast {record.tracking_number}"
            )

        cells = [
            gspread.Cell(record.record_id, FIELD_COLUMNS[name], "" if value is None else str(value))
            for name, value in fields.items()
        ]

        self._wait("sheets_write")
        try:
            # RAW - kody zaczynające się od zera nie mogą stać się liczbami
            self.worksheet.update_cells(cells, value_input_option='RAW')
        except (GSpreadException, requests.RequestException) as e:
            raise RegistryError(f"Nie można zaktualizować wiersza {record.record_id}: {e}") from e

        logging.debug(f"📝 Zaktualizowano wiersz {record.record_id}: {sorted(fields)}")
        return record.apply(fields)
