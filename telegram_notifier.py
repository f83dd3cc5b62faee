import html
import requests
import logging
import config


class TelegramNotifier:
    """
    Wysyłka kodów odbioru przez Telegram Bot API.

    Nigdy nie rzuca wyjątków transportowych - zwraca True/False,
    a o ponowieniu decyduje wywołujący.
    """

    def __init__(self, token=None, admin_chat_id=None, timeout=None, limiter=None):
        self.token = config.TELEGRAM_BOT_TOKEN if token is None else token
        self.admin_chat_id = config.TELEGRAM_ADMIN_CHAT_ID if admin_chat_id is None else admin_chat_id
        self.timeout = timeout or config.TELEGRAM_TIMEOUT
        self.limiter = limiter
        self.base_url = f"https://api.telegram.org/bot{self.token}/sendMessage"

    @staticmethod
    def format_pickup_message(tracking_number, pickup_code, location=None):
        lines = [
            "📦 <b>Your InPost parcel is ready for pickup!</b>",
            "",
            f"Tracking: <code>{html.escape(str(tracking_number))}</code>",
            f"Pickup Code: <code>{html.escape(str(pickup_code))}</code>",
        ]
        if location:
            lines.append(f"Location: {html.escape(str(location))}")
        lines.append("")
        lines.append(f"You have {config.PICKUP_EXPIRY_HOURS} hours to collect your parcel.")
        return "\n".join(lines)

    def send_message(self, chat_id, message):
        """
        Wysyła wiadomość tekstową na Telegram

        Returns:
            bool: True tylko gdy Telegram potwierdził wysyłkę (HTTP 200 i ok=true)
        """
        if not self.token:
            logging.warning("⚠️ Brak TELEGRAM_BOT_TOKEN - nie wysyłam wiadomości")
            return False
        if not chat_id:
            logging.warning("⚠️ Brak chat_id - nie wysyłam wiadomości")
            return False

        if self.limiter:
            self.limiter.wait_for("telegram")

        try:
            payload = {
                "chat_id": chat_id,
                "text": message,
                "parse_mode": "HTML",
            }
            response = requests.post(self.base_url, data=payload, timeout=self.timeout)

            if response.status_code != 200:
                logging.error(f"❌ Błąd wysyłania Telegrama ({response.status_code}): {response.text}")
                return False

            body = response.json()
            if not body.get("ok"):
                logging.error(f"❌ Telegram odrzucił wiadomość: {body.get('description')}")
                return False

            return True
        except (requests.RequestException, ValueError) as e:
            # ValueError - odpowiedź nie jest JSON-em
            logging.error(f"❌ Błąd połączenia z Telegramem: {e}")
            return False

    def send_pickup_code(self, chat_id, tracking_number, pickup_code, location=None):
        message = self.format_pickup_message(tracking_number, pickup_code, location)
        sent = self.send_message(chat_id, message)
        if sent:
            logging.info(f"📨 Kod odbioru dla {tracking_number} wysłany na czat {chat_id}")
        return sent

    def send_admin_notification(self, text):
        """Wiadomość do administratora (jeśli TELEGRAM_ADMIN_CHAT_ID jest ustawione)"""
        if not self.admin_chat_id:
            logging.debug("Brak TELEGRAM_ADMIN_CHAT_ID - pomijam powiadomienie admina")
            return False
        return self.send_message(self.admin_chat_id, f"🔔 <b>Admin</b>\n\n{html.escape(text)}")
