import signal
import sys
import json
import os
import logging
import threading
from datetime import datetime
import atexit
import config


class GracefulShutdown:
    """
    Obsługa sygnałów zamknięcia i liczniki działania aplikacji

    Pierwszy SIGINT/SIGTERM tylko ustawia flagę - pętla kończy bieżący
    cykl i wychodzi sama. Drugi sygnał wymusza wyjście.
    """

    def __init__(self, state_file=None):
        self.state_file = state_file or config.STATE_FILE
        self.shutdown_in_progress = False
        self.app_start_time = datetime.now()
        self.handlers_registered = False
        self.main_loop_running = False

        self.total_cycles = 0
        self.processed_messages = 0
        self.delivered_codes = 0
        self.failed_accounts = 0
        self.last_cycle = None
        self._lock = threading.Lock()

    def register_handlers(self):
        """Podpina handler pod SIGINT i SIGTERM oraz zapis stanu przy wyjściu"""
        if not self.handlers_registered:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
            atexit.register(self._cleanup_on_exit)
            self.handlers_registered = True
            logging.info('🔧 Obsługa SIGINT/SIGTERM aktywna')

    def _signal_handler(self, sig, frame):
        if self.shutdown_in_progress:
            logging.warning('⚠️ Drugi sygnał zamknięcia - wychodzę natychmiast')
            sys.exit(1)

        signal_name = "SIGINT (Ctrl+C)" if sig == signal.SIGINT else "SIGTERM"
        logging.info(f'🛑 Otrzymano sygnał {signal_name} - kończę po bieżącym cyklu...')
        self.shutdown_in_progress = True

    def _cleanup_on_exit(self):
        logging.info('💾 Zapisuję stan aplikacji przy wyjściu')
        self.save_state("stopped")

    def is_shutdown_requested(self):
        return self.shutdown_in_progress

    def set_main_loop_running(self, running=True):
        self.main_loop_running = running

    def record_cycle(self, cycle):
        """Dolicza wynik cyklu skanowania do liczników"""
        with self._lock:
            self.total_cycles += 1
            self.processed_messages += cycle.total_processed
            self.delivered_codes += cycle.total_delivered + cycle.retried_deliveries
            self.failed_accounts += cycle.failed
            self.last_cycle = {
                "finished_at": datetime.now().isoformat(),
                "successful_accounts": cycle.successful,
                "failed_accounts": cycle.failed,
                "processed": cycle.total_processed,
                "delivered": cycle.total_delivered,
                "retried_deliveries": cycle.retried_deliveries,
                "ambiguous": cycle.ambiguous,
            }

    def get_current_stats(self):
        uptime = datetime.now() - self.app_start_time
        with self._lock:
            return {
                "uptime": str(uptime),
                "uptime_seconds": uptime.total_seconds(),
                "start_time": self.app_start_time.isoformat(),
                "cycles": self.total_cycles,
                "processed_messages": self.processed_messages,
                "delivered_codes": self.delivered_codes,
                "failed_accounts": self.failed_accounts,
                "last_cycle": self.last_cycle,
                "running": self.main_loop_running,
                "shutdown_requested": self.shutdown_in_progress,
            }

    def save_state(self, status="running"):
        """Zapisuje stan do pliku JSON"""
        state = {
            "app_info": {
                "name": "InPost Code Relay",
                "status": status,
            },
            "saved_at": datetime.now().isoformat(),
            "stats": self.get_current_stats(),
        }

        try:
            with open(self.state_file, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2, ensure_ascii=False)
            logging.debug(f'💾 Stan aplikacji zapisany do {self.state_file}')
        except OSError as e:
            logging.error(f'❌ Błąd podczas zapisywania stanu: {e}')

    def load_previous_state(self):
        """Wczytuje stan z poprzedniego uruchomienia (tylko do logów)"""
        if not os.path.exists(self.state_file):
            logging.info('📚 Brak pliku stanu - pierwsze uruchomienie')
            return {}

        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                previous_state = json.load(f)
        except (OSError, ValueError) as e:
            logging.error(f'❌ Błąd podczas wczytywania poprzedniego stanu: {e}')
            return {}

        stats = previous_state.get('stats', {})
        logging.info('📚 Poprzednie uruchomienie:')
        logging.info(f"   • Zapisane: {previous_state.get('saved_at', 'nieznany')}")
        logging.info(f"   • Cykli: {stats.get('cycles', 0)}, wysłanych kodów: {stats.get('delivered_codes', 0)}")
        return previous_state


# Globalny singleton
_shutdown_manager = None


def get_shutdown_manager():
    global _shutdown_manager
    if _shutdown_manager is None:
        _shutdown_manager = GracefulShutdown()
    return _shutdown_manager


def init_graceful_shutdown():
    """Rejestruje sygnały, wczytuje poprzedni stan i zwraca (manager, stan)"""
    manager = get_shutdown_manager()
    manager.register_handlers()
    previous_state = manager.load_previous_state()
    logging.info('🚀 Obsługa zamykania gotowa')
    return manager, previous_state


# Funkcje pomocnicze dla łatwego użycia
def is_shutdown_requested():
    return get_shutdown_manager().is_shutdown_requested()


def set_main_loop_running(running=True):
    get_shutdown_manager().set_main_loop_running(running)


def record_cycle(cycle):
    get_shutdown_manager().record_cycle(cycle)


def save_periodic_state():
    get_shutdown_manager().save_state("running")


def get_stats():
    return get_shutdown_manager().get_current_stats()
