import logging
import threading
from shipment_registry import (
    resolve_shipment, normalize_tracking_number, now_timestamp,
    DuplicateTrackingNumberError, RegistryError,
)


class ProcessingOutcome:
    """Wynik rozliczenia jednego maila"""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    SKIPPED = "skipped"
    PENDING = "pending"

    # Powody dla SKIPPED / PENDING
    NO_TRACKING_NUMBER = "no-tracking-number"
    NO_MATCH = "no-match"
    AMBIGUOUS = "ambiguous"
    NO_CODE = "no-code"
    DELIVERY_FAILED = "delivery-failed"
    IN_FLIGHT = "in-flight"

    def __init__(self, kind, reason=None, tracking_number=None, record_id=None,
                 created=False, delivered=False):
        self.kind = kind
        self.reason = reason
        self.tracking_number = tracking_number
        self.record_id = record_id
        self.created = created
        self.delivered = delivered

    @classmethod
    def skipped(cls, reason, tracking_number=None):
        return cls(cls.SKIPPED, reason, tracking_number)

    @classmethod
    def pending(cls, reason, tracking_number=None, record_id=None, created=False):
        return cls(cls.PENDING, reason, tracking_number, record_id, created)

    def is_settled(self):
        """Czy mail można oznaczyć jako przeczytany"""
        return self.kind in (self.PROCESSED, self.ALREADY_PROCESSED)

    def __repr__(self):
        reason = f"({self.reason})" if self.reason else ""
        return f"ProcessingOutcome({self.kind}{reason}, {self.tracking_number!r})"


# Stan obsługi jednej ścieżki kodu (odbiór / nadanie)
_DONE = "done"
_ALREADY = "already"
_FAILED = "failed"


class CodeReconciler:
    """
    Decyduje co zapisać w rejestrze i co wysłać użytkownikowi.

    Kod odbioru trafia do użytkownika najwyżej raz (znacznik
    pickup_code_delivered_at stawiany dopiero po potwierdzeniu wysyłki).
    Kod nadania jest tylko zapisywany - nigdy nie idzie na Telegram.
    """

    def __init__(self, registry, notifier):
        self.registry = registry
        self.notifier = notifier
        # Numery przesyłek obsługiwane właśnie przez inny wątek
        self._claims = set()
        self._claims_lock = threading.Lock()

    def _claim(self, tracking_number):
        with self._claims_lock:
            if tracking_number in self._claims:
                return False
            self._claims.add(tracking_number)
            return True

    def _release(self, tracking_number):
        with self._claims_lock:
            self._claims.discard(tracking_number)

    def reconcile(self, facts, source_account=None):
        """
        Rozlicza dane z jednego maila z rejestrem przesyłek

        Args:
            facts: EmailFacts z ekstraktorów
            source_account: Adres skrzynki, z której przyszedł mail

        Returns:
            ProcessingOutcome
        """
        tracking_number = normalize_tracking_number(facts.tracking_number)
        if not tracking_number:
            logging.info("ℹ️ Brak numeru przesyłki w mailu - pomijam")
            return ProcessingOutcome.skipped(ProcessingOutcome.NO_TRACKING_NUMBER)

        if not self._claim(tracking_number):
            logging.info(f"⏳ Przesyłka {tracking_number} jest właśnie obsługiwana przez inne konto")
            return ProcessingOutcome.pending(ProcessingOutcome.IN_FLIGHT, tracking_number)

        try:
            return self._reconcile_claimed(tracking_number, facts, source_account)
        finally:
            self._release(tracking_number)

    def _reconcile_claimed(self, tracking_number, facts, source_account):
        lookup = resolve_shipment(self.registry, tracking_number)
        created = False

        if lookup.is_not_found() and facts.has_code() and source_account:
            lookup, created = self._create_shipment(tracking_number, source_account)

        if lookup.is_ambiguous():
            return ProcessingOutcome.skipped(ProcessingOutcome.AMBIGUOUS, tracking_number)
        if not lookup.is_unique():
            return ProcessingOutcome.skipped(ProcessingOutcome.NO_MATCH, tracking_number)

        record = lookup.record

        if not facts.has_code():
            logging.info(f"ℹ️ Brak kodu w mailu dla {tracking_number}")
            return ProcessingOutcome.skipped(ProcessingOutcome.NO_CODE, tracking_number)

        # Obie ścieżki niezależnie - jeden mail może nieść oba kody
        dropoff_state = self._record_dropoff(record, facts)
        pickup_state, delivered = self._handle_pickup(record, facts)
        states = (dropoff_state, pickup_state)

        if _FAILED in states:
            return ProcessingOutcome.pending(
                ProcessingOutcome.DELIVERY_FAILED, tracking_number, record.record_id, created
            )

        kind = ProcessingOutcome.PROCESSED if _DONE in states else ProcessingOutcome.ALREADY_PROCESSED
        return ProcessingOutcome(kind, None, tracking_number, record.record_id, created, delivered)

    def _create_shipment(self, tracking_number, source_account):
        """Tworzy brakującą przesyłkę i szuka jej ponownie"""
        created = False
        try:
            self.registry.insert(tracking_number, source_account)
            created = True
        except DuplicateTrackingNumberError:
            logging.info(f"🔁 Przesyłka {tracking_number} została właśnie utworzona gdzie indziej - szukam ponownie")

        return resolve_shipment(self.registry, tracking_number), created

    def _record_dropoff(self, record, facts):
        if not facts.dropoff_code:
            return None

        if record.dropoff_code_recorded_at:
            logging.info(f"✔️ Kod nadania dla {record.tracking_number} już zapisany")
            return _ALREADY

        self.registry.update(record, {
            "dropoff_code": facts.dropoff_code,
            "dropoff_recipient_name": facts.recipient_name,
            "dropoff_code_recorded_at": now_timestamp(),
        })
        logging.info(f"📥 Zapisano kod nadania dla {record.tracking_number} (tylko dla admina)")
        return _DONE

    def _handle_pickup(self, record, facts):
        """
        Returns:
            tuple: (stan ścieżki, czy wysłano wiadomość)
        """
        if not facts.pickup_code:
            return None, False

        if record.pickup_code_delivered_at:
            logging.info(f"✔️ Kod odbioru dla {record.tracking_number} już obsłużony")
            return _ALREADY, False

        fields = {
            "pickup_code": facts.pickup_code,
            "pickup_code_location": facts.location_label,
            "email_received_at": now_timestamp(),
        }

        if not record.notification_channel_id:
            # Nie ma komu wysłać - zapis i znacznik w jednym kroku
            fields["pickup_code_delivered_at"] = now_timestamp()
            self.registry.update(record, fields)
            logging.info(f"📥 Zapisano kod odbioru dla {record.tracking_number} (brak czatu - bez wysyłki)")
            return _DONE, False

        self.registry.update(record, fields)

        if not self._deliver(record):
            logging.error(f"❌ Nie wysłano kodu odbioru dla {record.tracking_number} - ponowię w następnym cyklu")
            return _FAILED, False

        self.registry.update(record, {"pickup_code_delivered_at": now_timestamp()})
        return _DONE, True

    def _deliver(self, record):
        try:
            return bool(self.notifier.send_pickup_code(
                record.notification_channel_id,
                record.tracking_number,
                record.pickup_code,
                record.pickup_code_location,
            ))
        except Exception as e:
            logging.error(f"❌ Wyjątek podczas wysyłki kodu dla {record.tracking_number}: {e}")
            return False

    def retry_pending_deliveries(self):
        """
        Ponawia wysyłkę zapisanych, ale niewysłanych kodów odbioru

        Kody są brane z rejestru - mail nie jest czytany ponownie.

        Returns:
            int: Liczba wysłanych kodów
        """
        try:
            pending = self.registry.find_pending_deliveries()
        except RegistryError as e:
            logging.error(f"❌ Nie można pobrać oczekujących wysyłek: {e}")
            return 0

        if not pending:
            return 0

        logging.info(f"🔁 Ponawiam wysyłkę {len(pending)} kodów odbioru")
        delivered = 0

        for candidate in pending:
            tracking_number = candidate.tracking_number
            if not self._claim(tracking_number):
                continue
            try:
                lookup = resolve_shipment(self.registry, tracking_number)
                if not lookup.is_unique():
                    continue

                record = lookup.record
                if record.pickup_code_delivered_at or not record.pickup_code or not record.notification_channel_id:
                    continue

                if self._deliver(record):
                    self.registry.update(record, {"pickup_code_delivered_at": now_timestamp()})
                    delivered += 1
            except RegistryError as e:
                logging.error(f"❌ Błąd rejestru przy ponowieniu {tracking_number}: {e}")
            finally:
                self._release(tracking_number)

        logging.info(f"📨 Ponowienie: wysłano {delivered}/{len(pending)} kodów")
        return delivered
