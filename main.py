import sys
import json
import logging
import argparse
import psutil
import config
from carriers_data_handlers import InPostDataHandler
from code_reconciler import CodeReconciler
from email_handler import EmailHandler
from health_check import start_health_server
from rate_limiter import create_api_limiters
from scan_scheduler import ScanScheduler
from sheets_handler import SheetsHandler
from telegram_notifier import TelegramNotifier
from graceful_shutdown import (
    init_graceful_shutdown, is_shutdown_requested, set_main_loop_running,
    record_cycle, save_periodic_state, get_stats, get_shutdown_manager,
)


# Konfiguracja logowania
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('gspread').setLevel(logging.WARNING)


class Components:
    """Połączone ze sobą obiekty aplikacji"""

    def __init__(self, sheets_handler, notifier, reconciler, email_handler, limiters):
        self.sheets_handler = sheets_handler
        self.notifier = notifier
        self.reconciler = reconciler
        self.email_handler = email_handler
        self.limiters = limiters


def build_components():
    limiters = create_api_limiters()
    logging.info("🚦 Zainicjalizowano rate limitery")

    sheets_handler = SheetsHandler(limiters=limiters)
    if not sheets_handler.connect():
        logging.error("❌ Nie można połączyć się z arkuszem Google.")
        return None

    notifier = TelegramNotifier(limiter=limiters)
    if not notifier.token:
        logging.warning("⚠️ Brak TELEGRAM_BOT_TOKEN - kody odbioru nie będą wysyłane")

    reconciler = CodeReconciler(sheets_handler, notifier)
    email_handler = EmailHandler(
        reconciler,
        data_handler=InPostDataHandler(config.EMAIL_CHECK_SETTINGS['sender_domains']),
    )
    logging.info(f"📬 Skonfigurowane konta: {len(email_handler.accounts)}")

    return Components(sheets_handler, notifier, reconciler, email_handler, limiters)


def log_system_stats():
    memory = psutil.virtual_memory().percent
    disk = psutil.disk_usage('/').percent
    process_mb = psutil.Process().memory_info().rss / (1024 * 1024)
    stats = get_stats()

    logging.info(
        f"📊 STATYSTYKI - Cykle: {stats['cycles']}, Wysłane kody: {stats['delivered_codes']}, "
        f"RAM procesu: {process_mb:.1f}MB, Uptime: {stats['uptime']}"
    )
    if memory > 80:
        logging.warning(f"⚠️ Wysokie użycie RAM: {memory}%")
    if disk > 90:
        logging.warning(f"⚠️ Wysokie użycie dysku: {disk}%")


def on_cycle_complete(cycle):
    record_cycle(cycle)
    save_periodic_state()
    if get_stats()['cycles'] % 10 == 0:
        log_system_stats()


def main_loop(with_health=True):
    """Główna pętla programu"""
    init_graceful_shutdown()

    components = build_components()
    if components is None:
        return 1

    scheduler = ScanScheduler(
        components.email_handler,
        components.reconciler,
        components.notifier,
        on_cycle_complete=on_cycle_complete,
    )

    server = None
    if with_health:
        try:
            server = start_health_server(scheduler)
        except OSError as e:
            logging.warning(f'⚠️ Nie udało się uruchomić health check: {e}')

    set_main_loop_running(True)
    logging.info(f"🚀 Start: sprawdzanie skrzynek co {config.CHECK_INTERVAL} min")
    try:
        scheduler.run_forever(is_shutdown_requested)
    finally:
        set_main_loop_running(False)
        if server is not None:
            server.shutdown()
        get_shutdown_manager().save_state("stopped")
        logging.info('🏁 Główna pętla zakończona')
    return 0


def run_once():
    """Jeden cykl i wyjście"""
    components = build_components()
    if components is None:
        return 1

    scheduler = ScanScheduler(components.email_handler, components.reconciler, components.notifier)
    cycle = scheduler.run_cycle()
    print(json.dumps(cycle.to_dict(), indent=2, ensure_ascii=False))
    return 0 if cycle.failed == 0 else 2


def run_retry_pending():
    """Tylko ponowna wysyłka zapisanych kodów odbioru"""
    components = build_components()
    if components is None:
        return 1

    delivered = components.reconciler.retry_pending_deliveries()
    logging.info(f"🏁 Ponownie wysłano {delivered} kodów")
    return 0


def run_reprocess(address, days_back=None):
    """Ponowny skan jednego konta z własnym oknem czasowym"""
    components = build_components()
    if components is None:
        return 1

    logging.info(f"🔄 Ponowny skan {address} (dni wstecz: {days_back or config.EMAIL_CHECK_SETTINGS['days_back']})")
    result = components.email_handler.scan_single_account(address, days_back)
    if result is None:
        return 1

    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0 if result.succeeded else 2


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="InPost Code Relay - kody odbioru z maili InPost na Telegram")
    parser.add_argument("--once", action="store_true", help="Wykonaj jeden cykl skanowania i zakończ")
    parser.add_argument("--retry-pending", action="store_true", help="Tylko ponów wysyłkę zapisanych kodów odbioru")
    parser.add_argument("--reprocess-email", type=str, metavar="ADDRESS", help="Ponownie przeskanuj podane konto")
    parser.add_argument("--days", type=int, help="Ile dni wstecz dla --reprocess-email")
    parser.add_argument("--no-health", action="store_true", help="Nie uruchamiaj serwera health check")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    if args.reprocess_email:
        return run_reprocess(args.reprocess_email, args.days)
    if args.retry_pending:
        return run_retry_pending()
    if args.once:
        return run_once()

    print("Uruchamianie głównej pętli. Naciśnij Ctrl+C aby zatrzymać.")
    return main_loop(with_health=not args.no_health)


if __name__ == "__main__":
    sys.exit(main())
