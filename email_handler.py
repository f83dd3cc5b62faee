import imaplib
import email
from email.header import decode_header
import logging
from datetime import datetime, timedelta
from concurrent.futures import ThreadPoolExecutor, as_completed
from bs4 import BeautifulSoup
import config
from carriers_data_handlers import InPostDataHandler
from code_reconciler import ProcessingOutcome
from shipment_registry import now_timestamp


FALLBACK_ENCODINGS = ['iso-8859-2', 'iso-8859-1']


class ScanState:
    """Etapy skanowania jednej skrzynki"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SEARCHING = "searching"
    FETCHING = "fetching"
    PROCESSING_MESSAGES = "processing_messages"


class AccountScanResult:
    """Wynik skanowania jednego konta w jednym cyklu"""

    def __init__(self, address):
        self.address = address
        self.state = ScanState.DISCONNECTED
        self.failed_state = None
        self.found = 0
        self.outcomes = []
        self.marked_read = 0
        self.error = None
        self.last_checked_at = None

    @property
    def succeeded(self):
        return self.error is None

    def count(self, kind):
        return sum(1 for outcome in self.outcomes if outcome.kind == kind)

    @property
    def delivered(self):
        return sum(1 for outcome in self.outcomes if outcome.delivered)

    @property
    def ambiguous(self):
        return [o.tracking_number for o in self.outcomes if o.reason == ProcessingOutcome.AMBIGUOUS]

    def to_dict(self):
        return {
            "address": self.address,
            "succeeded": self.succeeded,
            "failed_state": self.failed_state,
            "found": self.found,
            "processed": self.count(ProcessingOutcome.PROCESSED),
            "already_processed": self.count(ProcessingOutcome.ALREADY_PROCESSED),
            "skipped": self.count(ProcessingOutcome.SKIPPED),
            "pending": self.count(ProcessingOutcome.PENDING),
            "delivered": self.delivered,
            "marked_read": self.marked_read,
            "error": self.error,
            "last_checked_at": self.last_checked_at,
        }


class ScanCycleResult:
    """Zbiorczy wynik cyklu dla wszystkich kont"""

    def __init__(self, account_results):
        self.account_results = account_results
        self.retried_deliveries = 0

    @property
    def successful(self):
        return sum(1 for r in self.account_results if r.succeeded)

    @property
    def failed(self):
        return len(self.account_results) - self.successful

    @property
    def failed_accounts(self):
        return [r for r in self.account_results if not r.succeeded]

    @property
    def total_processed(self):
        return sum(r.count(ProcessingOutcome.PROCESSED) for r in self.account_results)

    @property
    def total_delivered(self):
        return sum(r.delivered for r in self.account_results)

    @property
    def ambiguous(self):
        numbers = []
        for r in self.account_results:
            for tracking_number in r.ambiguous:
                if tracking_number not in numbers:
                    numbers.append(tracking_number)
        return numbers

    def to_dict(self):
        return {
            "successful": self.successful,
            "failed": self.failed,
            "processed": self.total_processed,
            "delivered": self.total_delivered,
            "retried_deliveries": self.retried_deliveries,
            "ambiguous": self.ambiguous,
            "accounts": [r.to_dict() for r in self.account_results],
        }


class EmailHandler:
    """
    Skaner skrzynek IMAP z powiadomieniami InPost.

    Każde konto jest skanowane osobno (własne połączenie, własne błędy).
    Maile są pobierane przez BODY.PEEK[], więc samo czytanie nie zmienia
    flag - jako przeczytane oznaczamy je jednym STORE na końcu skanu.
    """

    def __init__(self, reconciler, data_handler=None, accounts=None, settings=None):
        self.reconciler = reconciler
        self.settings = dict(config.EMAIL_CHECK_SETTINGS)
        if settings:
            self.settings.update(settings)
        self.accounts = config.get_imap_accounts() if accounts is None else list(accounts)
        self.data_handler = data_handler or InPostDataHandler(self.settings.get('sender_domains'))

    def connect_to_email_account(self, account):
        """
        Łączy się z kontem email i zwraca klienta IMAP

        Returns:
            imaplib.IMAP4_SSL: Klient IMAP lub None w przypadku błędu
        """
        timeout = self.settings.get('imap_timeout', 30)
        try:
            logging.info(f"🔗 Łączenie z {account.host}:{account.port} dla {account.address}")
            client = imaplib.IMAP4_SSL(account.host, account.port, timeout=timeout)
            client.login(account.address, account.password)
            logging.info(f"✅ Połączono z {account.address}")
            return client
        except imaplib.IMAP4.error as e:
            logging.error(f"❌ Błąd logowania IMAP dla {account.address}: {e}")
            return None
        except OSError as e:
            logging.error(f"❌ Błąd połączenia z {account.host} dla {account.address}: {e}")
            return None

    def build_search_criteria(self, days_back=None):
        """
        Kryteria IMAP: okno czasowe + nadawcy InPost

        Nie używamy UNSEEN - część serwerów z opóźnieniem zmienia flagi.
        """
        if days_back is None:
            days_back = self.settings.get('days_back', 3)

        cutoff_date = datetime.now(config.TIMEZONE) - timedelta(days=days_back)
        date_string = cutoff_date.strftime('%d-%b-%Y')  # Format: "15-May-2025"

        from_terms = [f'FROM "{domain}"' for domain in self.settings.get('sender_domains') or []]
        if not from_terms:
            return f'(SINCE "{date_string}")'

        # OR jest dwuargumentowy: OR a OR b c
        senders = from_terms[-1]
        for term in reversed(from_terms[:-1]):
            senders = f"OR {term} {senders}"

        return f'(SINCE "{date_string}" {senders})'

    def search_candidate_messages(self, client, days_back=None):
        status, _ = client.select("INBOX")
        if status != 'OK':
            raise imaplib.IMAP4.error(f"Nie można otworzyć INBOX: {status}")

        criteria = self.build_search_criteria(days_back)
        # UID zamiast numerów sekwencyjnych - EXPUNGE innego klienta ich nie przesunie
        status, data = client.uid('SEARCH', None, criteria)
        if status != 'OK':
            raise imaplib.IMAP4.error(f"Błąd wyszukiwania {criteria}: {status}")

        message_ids = data[0].split() if data and data[0] else []

        max_emails = self.settings.get('max_emails_per_account', 100)
        if len(message_ids) > max_emails:
            logging.info(f"📧 Ograniczenie do {max_emails} najnowszych z {len(message_ids)}")
            message_ids = message_ids[-max_emails:]

        return message_ids

    def fetch_message(self, client, msg_id):
        status, data = client.uid('FETCH', msg_id, '(BODY.PEEK[])')
        if status != 'OK' or not data or not isinstance(data[0], tuple):
            logging.warning(f"⚠️ Nie można pobrać wiadomości {msg_id!r}: {status}")
            return None
        return email.message_from_bytes(data[0][1])

    @staticmethod
    def _decode_bytes(payload, charset=None):
        for encoding in [charset or 'utf-8'] + FALLBACK_ENCODINGS:
            try:
                return payload.decode(encoding)
            except (UnicodeDecodeError, LookupError):
                continue
        return payload.decode('utf-8', errors='ignore')

    @staticmethod
    def html_to_text(html):
        soup = BeautifulSoup(html, 'html.parser')
        for tag in soup(['head', 'style', 'script']):
            tag.decompose()
        return soup.get_text('\n')

    def get_email_body(self, email_message):
        """Treść tekstowa + HTML zamieniony na tekst, w jednym stringu"""
        plain_parts = []
        html_parts = []

        for part in email_message.walk():
            if part.is_multipart() or part.get_content_disposition() == 'attachment':
                continue

            content_type = part.get_content_type()
            if content_type not in ('text/plain', 'text/html'):
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                continue

            text = self._decode_bytes(payload, part.get_content_charset())
            if content_type == 'text/html':
                html_parts.append(self.html_to_text(text))
            else:
                plain_parts.append(text)

        return "\n".join(plain_parts + html_parts)

    def decode_email_subject(self, subject):
        if not subject:
            return ''

        decoded_parts = []
        for part, encoding in decode_header(subject):
            if isinstance(part, bytes):
                decoded_parts.append(self._decode_bytes(part, encoding))
            else:
                decoded_parts.append(str(part))
        return ''.join(decoded_parts)

    def process_message(self, client, msg_id, account):
        """
        Pobiera, parsuje i rozlicza jeden mail

        Returns:
            ProcessingOutcome lub None (mail nie do obsłużenia)
        """
        email_message = self.fetch_message(client, msg_id)
        if email_message is None:
            return None

        sender = email_message.get('From', '')
        subject = self.decode_email_subject(email_message.get('Subject'))

        if not self.data_handler.can_handle(sender, subject):
            logging.debug(f"Pomijam mail od {sender}: {subject}")
            return None

        body = self.get_email_body(email_message)
        if not body.strip():
            logging.warning(f"⚠️ Pusta treść maila '{subject}' ({account.address})")
            return None

        facts = self.data_handler.extract_facts(body)
        outcome = self.reconciler.reconcile(facts, account.address)
        logging.info(f"📬 {account.address} / '{subject}': {outcome}")
        return outcome

    def mark_as_read(self, client, msg_ids):
        """Jednym poleceniem oznacza maile jako przeczytane"""
        if not msg_ids:
            return 0

        id_list = ','.join(m.decode() if isinstance(m, bytes) else str(m) for m in msg_ids)
        try:
            status, _ = client.uid('STORE', id_list, '+FLAGS', '\\Seen')
        except (imaplib.IMAP4.error, OSError) as e:
            logging.error(f"❌ Nie można oznaczyć maili jako przeczytane: {e}")
            return 0

        if status != 'OK':
            logging.error(f"❌ STORE \\Seen zwrócił {status}")
            return 0

        logging.info(f"✅ Oznaczono {len(msg_ids)} maili jako przeczytane")
        return len(msg_ids)

    def scan_account(self, account, days_back=None):
        """Pełny skan jednego konta"""
        result = AccountScanResult(account.address)

        client = self.connect_to_email_account(account)
        if client is None:
            result.failed_state = ScanState.DISCONNECTED
            result.error = f"Nie można połączyć z {account.host}:{account.port}"
            result.last_checked_at = now_timestamp()
            return result

        result.state = ScanState.CONNECTED
        settled_ids = []

        try:
            result.state = ScanState.SEARCHING
            message_ids = self.search_candidate_messages(client, days_back)
            result.found = len(message_ids)
            logging.info(f"📧 {account.address}: {len(message_ids)} maili do sprawdzenia")

            for msg_id in message_ids:
                result.state = ScanState.FETCHING
                try:
                    outcome = self.process_message(client, msg_id, account)
                except (imaplib.IMAP4.error, OSError):
                    raise
                except Exception as e:
                    # Uszkodzony mail / błąd rejestru - zostaje nieprzeczytany
                    logging.warning(f"⚠️ Błąd przetwarzania maila {msg_id!r} ({account.address}): {e}")
                    continue

                result.state = ScanState.PROCESSING_MESSAGES
                if outcome is None:
                    continue
                result.outcomes.append(outcome)
                if outcome.is_settled():
                    settled_ids.append(msg_id)

            if self.settings.get('mark_as_read', True):
                result.marked_read = self.mark_as_read(client, settled_ids)

        except (imaplib.IMAP4.error, OSError) as e:
            result.failed_state = result.state
            result.error = str(e) or e.__class__.__name__
            logging.error(f"❌ Skan {account.address} przerwany na etapie {result.state}: {result.error}")
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logging.debug(f"Błąd przy wylogowaniu {account.address}: {e}")
            result.state = ScanState.DISCONNECTED
            result.last_checked_at = now_timestamp()

        return result

    def scan_all_accounts(self, days_back=None):
        """Skanuje wszystkie konta równolegle - błąd jednego nie zatrzymuje innych"""
        if not self.accounts:
            logging.warning("⚠️ Brak skonfigurowanych kont IMAP")
            return ScanCycleResult([])

        max_workers = max(1, min(self.settings.get('max_parallel_accounts', 4), len(self.accounts)))
        results = []

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self.scan_account, account, days_back): account
                for account in self.accounts
            }

            for future in as_completed(futures):
                account = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logging.error(f"❌ Nieoczekiwany błąd skanu {account.address}: {e}", exc_info=True)
                    failed = AccountScanResult(account.address)
                    failed.error = str(e) or e.__class__.__name__
                    failed.last_checked_at = now_timestamp()
                    results.append(failed)

        cycle = ScanCycleResult(results)
        logging.info(
            f"📊 Cykl: {cycle.successful} kont OK, {cycle.failed} z błędem, "
            f"{cycle.total_processed} przetworzonych, {cycle.total_delivered} wysłanych kodów"
        )
        return cycle

    def scan_single_account(self, address, days_back=None):
        """Ponowny skan jednego konta (np. z dłuższym oknem)"""
        for account in self.accounts:
            if account.address.lower() == (address or '').lower():
                return self.scan_account(account, days_back)

        logging.error(f"❌ Konto {address} nie jest skonfigurowane")
        return None
