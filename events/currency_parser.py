"""
💱 Currency Parser - Montants d'affichage YouTube ("$5.00", "€3,50", "TRY 100")

YouTube (InnerTube) ne donne parfois que la chaîne formatée du Super Chat.
parse_display_amount() la convertit en (montant, code ISO, symbole).
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

LOGGER = logging.getLogger(__name__)

CODE_SPACE_RE = re.compile(r"^([A-Za-z]{3})\s+([0-9,]+(?:[.,][0-9]{1,2})?)$")
CODE_SYMBOL_RE = re.compile(r"^([A-Za-z]{3})\$([0-9,]+(?:\.[0-9]{1,2})?)$")
LEADING_NUMBER_RE = re.compile(r"^\s*[0-9]*\.?[0-9]+")

# Ordre important : "₨" avant "₹", "$" en dernier (le plus ambigu)
SYMBOL_PATTERNS = [
    (re.compile(r"₺([0-9,]+(?:\.[0-9]{1,2})?)"), "TRY", "₺"),
    (re.compile(r"₹([0-9,]+(?:\.[0-9]{1,2})?)"), "INR", "₹"),
    (re.compile(r"€([0-9,.]+)"), "EUR", "€"),
    (re.compile(r"£([0-9,]+(?:\.[0-9]{1,2})?)"), "GBP", "£"),
    (re.compile(r"¥([0-9,]+)"), "JPY", "¥"),
    (re.compile(r"₩([0-9,]+)"), "KRW", "₩"),
    (re.compile(r"₽([0-9,]+(?:\.[0-9]{1,2})?)"), "RUB", "₽"),
    (re.compile(r"฿([0-9,]+(?:\.[0-9]{1,2})?)"), "THB", "฿"),
    (re.compile(r"₱([0-9,]+(?:\.[0-9]{1,2})?)"), "PHP", "₱"),
    (re.compile(r"₦([0-9,]+(?:\.[0-9]{1,2})?)"), "NGN", "₦"),
    (re.compile(r"₴([0-9,]+(?:\.[0-9]{1,2})?)"), "UAH", "₴"),
    (re.compile(r"₪([0-9,]+(?:\.[0-9]{1,2})?)"), "ILS", "₪"),
    (re.compile(r"₫([0-9,]+)"), "VND", "₫"),
    (re.compile(r"৳([0-9,]+(?:\.[0-9]{1,2})?)"), "BDT", "৳"),
    (re.compile(r"₨([0-9,]+(?:\.[0-9]{1,2})?)"), "PKR", "₨"),
    (re.compile(r"\$([0-9,]+(?:\.[0-9]{1,2})?)"), "USD", "$"),
]

CURRENCY_SYMBOLS = {
    "TRY": "₺", "EUR": "€", "GBP": "£", "JPY": "¥", "KRW": "₩",
    "BRL": "R$", "RUB": "₽", "PLN": "zł", "THB": "฿", "PHP": "₱",
    "MYR": "RM", "ZAR": "R", "NGN": "₦", "INR": "₹", "USD": "$",
    "CAD": "$", "AUD": "$", "NZD": "$", "SGD": "$", "HKD": "$",
    "TWD": "NT$", "CHF": "Fr", "SEK": "kr", "NOK": "kr", "DKK": "kr",
    "CZK": "Kč", "HUF": "Ft", "RON": "lei", "BGN": "лв", "HRK": "kn",
    "UAH": "₴", "ILS": "₪", "AED": "د.إ", "SAR": "ر.س", "EGP": "£",
    "VND": "₫", "IDR": "Rp", "PKR": "₨", "BDT": "৳", "LKR": "₨",
}

# Préfixes "code + $" explicites
DOLLAR_PREFIXES = (("CA$", "CAD"), ("A$", "AUD"))


@dataclass
class ParsedAmount:
    """Résultat d'un parsing réussi"""
    amount: float
    currency: str
    symbol: str
    original: str


def _leading_float(text: str) -> float:
    """parseFloat-like : lit le nombre en tête de chaîne, 0 sinon"""
    match = LEADING_NUMBER_RE.match(text)
    return float(match.group(0)) if match else 0.0


def parse_amount(amount_str: str) -> float:
    """
    Interprète séparateurs US/européens.

    "1,000.50" → 1000.5 | "1.000,50" → 1000.5 | "219,99" → 219.99 | "5,999" → 5999
    """
    if not amount_str:
        return 0.0

    has_comma = "," in amount_str
    has_period = "." in amount_str

    if not has_comma:
        return _leading_float(amount_str)

    if has_period:
        if amount_str.rfind(",") > amount_str.rfind("."):
            # Format européen : point = milliers, virgule = décimale
            return _leading_float(amount_str.replace(".", "").replace(",", ".", 1))
        return _leading_float(amount_str.replace(",", ""))

    after_comma = amount_str[amount_str.rfind(",") + 1:]
    if 0 < len(after_comma) <= 2:
        return _leading_float(amount_str.replace(",", "."))
    return _leading_float(amount_str.replace(",", ""))


def parse_display_amount(display: str) -> Optional[ParsedAmount]:
    """
    Parse une chaîne de montant affichée par YouTube.

    Returns:
        ParsedAmount, ou None si le format est inconnu / négatif / vide
    """
    if not isinstance(display, str):
        return None
    text = display.strip()
    if not text:
        return None
    if text.startswith("-"):
        LOGGER.warning(f"⚠️ Unknown currency format detected: {display!r}")
        return None

    if text.startswith("TRY "):
        amount = parse_amount(text[4:])
        if amount > 0:
            return ParsedAmount(amount, "TRY", "₺", text)

    match = CODE_SPACE_RE.match(text)
    if match:
        currency = match.group(1).upper()
        return ParsedAmount(
            parse_amount(match.group(2)), currency, CURRENCY_SYMBOLS.get(currency, currency), text
        )

    for prefix, currency in DOLLAR_PREFIXES:
        if text.startswith(prefix):
            amount = parse_amount(text[len(prefix):])
            if amount > 0:
                return ParsedAmount(amount, currency, prefix, text)

    match = CODE_SYMBOL_RE.match(text)
    if match:
        return ParsedAmount(parse_amount(match.group(2)), match.group(1).upper(), "$", text)

    for pattern, currency, symbol in SYMBOL_PATTERNS:
        match = pattern.search(text)
        if match:
            return ParsedAmount(parse_amount(match.group(1)), currency, symbol, text)

    LOGGER.warning(f"⚠️ Unknown currency format detected: {display!r}")
    return None
