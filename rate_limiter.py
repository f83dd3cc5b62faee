import time
import logging
import threading
from datetime import datetime, timedelta


class SimpleRateLimiter:
    """
    Limiter wywołań API w przesuwanym oknie czasowym.

    Bezpieczny dla wątków - konta pocztowe są sprawdzane równolegle
    i wszystkie korzystają z tego samego arkusza i bota.
    """

    def __init__(self, max_calls=50, time_window=60, name="API"):
        """
        Args:
            max_calls (int): Ile wywołań mieści się w jednym oknie
            time_window (int): Długość okna w sekundach
            name (str): Nazwa widoczna w logach (np. "sheets_read")
        """
        self.max_calls = max_calls
        self.time_window = time_window
        self.name = name
        self.calls = []
        self._lock = threading.Lock()

        logging.debug(f"🚦 Limiter '{name}': {max_calls}/{time_window}s")

    def _prune(self, now):
        cutoff = now - timedelta(seconds=self.time_window)
        self.calls = [call for call in self.calls if call > cutoff]

    def wait_if_needed(self):
        """Czeka, jeśli limit w oknie jest wyczerpany, i rejestruje wywołanie"""
        while True:
            with self._lock:
                now = datetime.now()
                self._prune(now)

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    logging.debug(f"📊 {self.name}: {len(self.calls)}/{self.max_calls}")
                    return

                sleep_time = self.time_window - (now - min(self.calls)).total_seconds()

            # Śpimy poza lockiem, żeby inne wątki mogły liczyć swoje okna
            if sleep_time > 0:
                logging.warning(f"🕐 {self.name} Rate limit! Czekam {sleep_time:.1f}s")
                time.sleep(sleep_time)

    def get_stats(self):
        with self._lock:
            self._prune(datetime.now())
            current = len(self.calls)
        return {
            "name": self.name,
            "max_calls": self.max_calls,
            "time_window": self.time_window,
            "current_calls": current,
            "remaining_calls": max(0, self.max_calls - current),
        }


class MultiRateLimiter:
    """Zarządza wieloma rate limiterami naraz"""

    def __init__(self):
        self.limiters = {}

    def add_limiter(self, name, max_calls, time_window):
        self.limiters[name] = SimpleRateLimiter(max_calls, time_window, name)

    def wait_for(self, limiter_name):
        limiter = self.limiters.get(limiter_name)
        if limiter:
            limiter.wait_if_needed()
        else:
            logging.warning(f"⚠️ Brak limitera o nazwie {limiter_name} - wywołanie bez limitu")

    def get_all_stats(self):
        return {name: limiter.get_stats() for name, limiter in self.limiters.items()}


def create_api_limiters():
    """Tworzy standardowe rate limitery dla arkusza Google i Telegrama"""
    limiters = MultiRateLimiter()

    # Google Sheets API: 60 żądań/min na użytkownika - zostawiamy zapas
    limiters.add_limiter("sheets_read", max_calls=50, time_window=60)
    limiters.add_limiter("sheets_write", max_calls=50, time_window=60)

    # Telegram Bot API: ~30 wiadomości/s globalnie
    limiters.add_limiter("telegram", max_calls=25, time_window=1)

    return limiters
