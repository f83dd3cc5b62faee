import logging
import re


# Etykiety sekcji w mailach InPost - na nich kończy się opis sklepu / nazwisko
SECTION_LABELS = (
    r"Opening|Open\s+hours|Recipient|Sender|Collection|Pick[\s-]?up|Parcel|Tracking|"
    r"Your\s+code|Enter\s+this|Drop[\s-]?off|Address|Directions|Get\s+directions|Download|Track"
)

UK_TRACKING = r"[A-Z]{2,3}\d{12,21}"
EU_TRACKING = r"(?=[A-Z0-9]*\d)[A-Z0-9]{20,24}"
TRACKING_VALUE = rf"({UK_TRACKING}|{EU_TRACKING})\b"


class TextPattern:
    """Pojedynczy wzorzec rozpoznający jedno pole maila"""

    def __init__(self, name, regex, flags=re.IGNORECASE):
        self.name = name
        self.regex = re.compile(regex, flags)

    def search(self, text):
        match = self.regex.search(text)
        if match:
            return match.group(1)
        return None


def first_match(patterns, text):
    """
    Zwraca pierwszą wartość pasującą do listy wzorców (kolejność = priorytet)

    Returns:
        tuple: (wartość, nazwa wzorca) lub (None, None)
    """
    if not text:
        return None, None
    for pattern in patterns:
        value = pattern.search(text)
        if value:
            return value, pattern.name
    return None, None


# Numer przesyłki: najpierw etykiety, potem gołe wzorce (mogą łapać przypadkowe liczby)
TRACKING_NUMBER_PATTERNS = [
    TextPattern("parcel_no", r"parcel\s*no\.?\s*[:#]?\s*" + TRACKING_VALUE),
    TextPattern("parcel_number", r"parcel\s*number\s*[:#]?\s*" + TRACKING_VALUE),
    TextPattern("tracking_number", r"tracking\s*(?:number|no\.?)\s*[:#]?\s*" + TRACKING_VALUE),
    TextPattern("url_path", r"/(?:tracking|track|parcels?)/" + TRACKING_VALUE),
    TextPattern("bare_uk", rf"\b({UK_TRACKING})\b"),
    TextPattern("bare_eu", rf"\b({EU_TRACKING})\b"),
]

# Kod odbioru (6 cyfr). Ostatni wzorzec to dowolne 6 cyfr - świadome ryzyko fałszywych trafień
# Po 6 cyfrach nie może być kolejnej grupy - "344 924 512" to kod nadania
PICKUP_CODE_PATTERNS = [
    TextPattern("collection_code", r"collection\s*code\s*[:\-]?\s*(\d{3}\s?\d{3})(?![ \t]?\d)"),
    TextPattern("pickup_code", r"pick[\s-]?up\s*code\s*[:\-]?\s*(\d{3}\s?\d{3})(?![ \t]?\d)"),
    TextPattern("your_code", r"your\s*code\s*[:\-]?\s*(\d{3}\s?\d{3})(?![ \t]?\d)"),
    TextPattern("bare_six_digits", r"(?<!\d)(\d{6})(?!\d)"),
]

# Kod nadania (9 cyfr, zwykle "ddd ddd ddd")
SEND_CODE_PATTERNS = [
    TextPattern("code_instead", r"enter\s+this\s+code\s+instead\s*[:\-]?\s*(\d{3}\s?\d{3}\s?\d{3})(?!\d)"),
    TextPattern("dropoff_code", r"(?:drop[\s-]?off|send(?:ing)?)\s*code\s*[:\-]?\s*(\d{3}\s?\d{3}\s?\d{3})(?!\d)"),
    TextPattern("bare_grouped", r"(?<!\d)(\d{3} \d{3} \d{3})(?!\d)"),
]

# Lokalizacja: opis sklepu ma pierwszeństwo przed kodem paczkomatu.
# Opis kończy się na mieście (max dwa słowa z wielkiej litery, bez dni tygodnia)
UK_POSTCODE = r"[A-Z]{1,2}\d[A-Z\d]?\s?\d[A-Z]{2}"
_WEEKDAY = r"(?:Mon|Tues?|Wed(?:nes)?|Thu(?:rs?)?|Fri|Sat(?:ur)?|Sun)(?:day)?\b"
_CITY_WORD = rf"(?!{_WEEKDAY})[A-Z][A-Za-z\-']+"
LOCATION_PATTERNS = [
    TextPattern(
        "shop_with_postcode",
        r"InPost\s+shop\s*[-–]\s*([^\n]{2,80}?,?\s*"
        rf"(?-i:{UK_POSTCODE}\s+{_CITY_WORD}(?:[ \t]+(?!(?:{SECTION_LABELS})\b){_CITY_WORD})?))\b",
    ),
    TextPattern(
        "shop_until_label",
        rf"InPost\s+shop\s*[-–]\s*(.{{2,120}}?)(?=\s*(?:{SECTION_LABELS})\b|\s*$)",
        re.IGNORECASE | re.DOTALL,
    ),
    TextPattern("locker", r"(?:parcel\s*)?locker\s*(?:id)?\s*[:\-]?\s*((?=[A-Z0-9]{4,12}\b)[A-Z0-9]*\d[A-Z0-9]*)\b"),
    TextPattern("paczkomat", r"paczkomat\s*[:\-]?\s*((?=[A-Z0-9]{4,12}\b)[A-Z0-9]*\d[A-Z0-9]*)\b"),
]

# Odbiorca: "TO: Jan Kowalski" - minimum dwa słowa z wielkiej litery
_NAME_WORD = rf"(?!(?:{SECTION_LABELS})\b)[A-Z][a-zA-Z'\-]+"
RECIPIENT_NAME_PATTERNS = [
    TextPattern("to_label", rf"\b(?i:to):[ \t]*({_NAME_WORD}(?:[ \t]+{_NAME_WORD})+)", 0),
]


def _strip_spaces(value):
    return re.sub(r"\s+", "", value)


def _collapse_spaces(value):
    return " ".join(value.split())


class EmailFacts:
    """Dane wyciągnięte z jednego maila (nie są nigdzie zapisywane w tej postaci)"""

    def __init__(self, tracking_number=None, pickup_code=None, dropoff_code=None,
                 location_label=None, recipient_name=None):
        self.tracking_number = tracking_number
        self.pickup_code = pickup_code
        self.dropoff_code = dropoff_code
        self.location_label = location_label
        self.recipient_name = recipient_name

    def has_code(self):
        return bool(self.pickup_code or self.dropoff_code)

    def to_dict(self):
        return {
            "tracking_number": self.tracking_number,
            "pickup_code": self.pickup_code,
            "dropoff_code": self.dropoff_code,
            "location_label": self.location_label,
            "recipient_name": self.recipient_name,
        }

    def __repr__(self):
        return f"EmailFacts({self.to_dict()})"


class BaseDataHandler:
    """Bazowa klasa do wyciągania danych z maili przewoźnika"""

    def __init__(self):
        self.name = "Unknown"

    def can_handle(self, sender, subject):
        """
        Sprawdza czy ten handler może obsłużyć dany email

        Args:
            sender: Nagłówek From
            subject: Zdekodowany temat

        Returns:
            bool: True jeśli email pochodzi od tego przewoźnika
        """
        return False

    def extract_facts(self, text):
        """Zwraca EmailFacts dla treści maila (tekst + HTML bez znaczników)"""
        return EmailFacts()


class InPostDataHandler(BaseDataHandler):
    """
    Regexowe wyciąganie danych z powiadomień InPost (UK i PL/EU).

    Wszystkie metody extract_* są czyste: brak dopasowania zwraca None,
    nigdy nie rzucają wyjątku.
    """

    def __init__(self, sender_domains=None):
        super().__init__()
        self.name = "InPost"
        self.sender_domains = [d.lower() for d in (sender_domains or ['inpost.co.uk', 'inpost.pl', 'inpost.eu'])]

    def can_handle(self, sender, subject):
        sender = (sender or "").lower()
        for domain in self.sender_domains:
            if domain in sender:
                return True
        if "inpost" in (subject or "").lower():
            logging.info("✅ InPost: Znaleziono 'inpost' w temacie")
            return True
        return False

    def extract_tracking_number(self, text):
        value, pattern = first_match(TRACKING_NUMBER_PATTERNS, text)
        if not value:
            return None
        logging.debug(f"🔢 Numer przesyłki z wzorca '{pattern}': {value}")
        return _strip_spaces(value).upper()

    def extract_pickup_code(self, text):
        value, pattern = first_match(PICKUP_CODE_PATTERNS, text)
        if not value:
            return None
        if pattern == "bare_six_digits":
            logging.debug("⚠️ Kod odbioru z gołego wzorca 6 cyfr - możliwe fałszywe trafienie")
        return _strip_spaces(value)

    def extract_send_code(self, text):
        value, pattern = first_match(SEND_CODE_PATTERNS, text)
        if not value:
            return None
        return _strip_spaces(value)

    def extract_location(self, text):
        value, pattern = first_match(LOCATION_PATTERNS, text)
        if not value:
            return None
        if pattern in ("locker", "paczkomat"):
            return value.upper()
        return _collapse_spaces(value).strip(" ,.-")

    def extract_recipient_name(self, text):
        value, pattern = first_match(RECIPIENT_NAME_PATTERNS, text)
        if not value:
            return None
        return _collapse_spaces(value)

    def extract_facts(self, text):
        facts = EmailFacts(
            tracking_number=self.extract_tracking_number(text),
            pickup_code=self.extract_pickup_code(text),
            dropoff_code=self.extract_send_code(text),
            location_label=self.extract_location(text),
            recipient_name=self.extract_recipient_name(text),
        )
        logging.info(f"🔍 {self.name}: Wyciągnięte dane {facts.to_dict()}")
        return facts
