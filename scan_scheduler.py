import time
import logging
import threading
import config
from shipment_registry import now_timestamp


class ScanScheduler:
    """
    Uruchamia cykle skanowania - z timera i na żądanie ("odśwież teraz").

    Oba wejścia korzystają z jednego tokenu (Lock): jeśli cykl trwa,
    kolejne wywołanie nic nie robi zamiast startować drugi cykl.
    """

    def __init__(self, email_handler, reconciler, notifier=None, interval_minutes=None,
                 on_cycle_complete=None):
        self.email_handler = email_handler
        self.reconciler = reconciler
        self.notifier = notifier
        self.interval_minutes = interval_minutes or config.CHECK_INTERVAL
        self.on_cycle_complete = on_cycle_complete
        self.last_cycle = None
        self.last_cycle_at = None
        self._run_token = threading.Lock()

    def is_running(self):
        return self._run_token.locked()

    def run_cycle(self, days_back=None):
        """
        Jeden cykl w bieżącym wątku

        Returns:
            ScanCycleResult lub None, jeśli inny cykl jeszcze trwa
        """
        if not self._run_token.acquire(blocking=False):
            logging.info("⏳ Cykl skanowania już trwa - pomijam")
            return None
        try:
            return self._run_cycle_locked(days_back)
        finally:
            self._run_token.release()

    def trigger_now(self):
        """
        Uruchamia cykl w tle (ręczne odświeżenie)

        Returns:
            bool: True jeśli cykl wystartował, False gdy już trwa
        """
        if not self._run_token.acquire(blocking=False):
            logging.info("⏳ Odświeżenie na żądanie zignorowane - cykl już trwa")
            return False

        def worker():
            try:
                self._run_cycle_locked()
            except Exception as e:
                logging.error(f"❌ Błąd cyklu na żądanie: {e}", exc_info=True)
            finally:
                self._run_token.release()

        thread = threading.Thread(target=worker, name="scan-on-demand", daemon=True)
        thread.start()
        logging.info("🔄 Uruchomiono cykl skanowania na żądanie")
        return True

    def _run_cycle_locked(self, days_back=None):
        started = time.time()
        logging.info(f"🔍 Start cyklu skanowania: {now_timestamp()}")

        retried = self.reconciler.retry_pending_deliveries()
        cycle = self.email_handler.scan_all_accounts(days_back)
        cycle.retried_deliveries = retried

        self._notify_admin(cycle)

        self.last_cycle = cycle
        self.last_cycle_at = now_timestamp()
        logging.info(f"🏁 Cykl zakończony w {time.time() - started:.1f}s")

        if self.on_cycle_complete:
            self.on_cycle_complete(cycle)
        return cycle

    def _notify_admin(self, cycle):
        if self.notifier is None:
            return

        lines = []
        for result in cycle.failed_accounts:
            lines.append(f"❌ {result.address}: {result.error}")
        for tracking_number in cycle.ambiguous:
            lines.append(f"🚨 Duplikaty w rejestrze dla {tracking_number}")

        if lines:
            self.notifier.send_admin_notification("Problemy w cyklu skanowania:\n" + "\n".join(lines))

    def run_forever(self, should_stop):
        """Pętla z interwałem CHECK_INTERVAL; should_stop() sprawdzane co sekundę"""
        while not should_stop():
            try:
                self.run_cycle()
            except Exception as e:
                logging.error(f"❌ Błąd w głównej pętli: {e}", exc_info=True)

            logging.info(f"💤 Oczekiwanie {self.interval_minutes} minut do następnego sprawdzenia")
            for _ in range(int(self.interval_minutes * 60)):
                if should_stop():
                    break
                time.sleep(1)

        logging.info("🏁 Pętla skanowania zakończona")
