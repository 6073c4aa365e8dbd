"""
💰 Currency words - Montants lisibles pour le TTS

get_currency_word("EUR") → "euros", format_currency_for_tts(1, "$") → "1 dollar".
Devise inconnue → "dollars".
"""
import math
from typing import Any, Optional

CURRENCY_WORDS = {
    # Principales
    "$": "dollars", "USD": "dollars",
    "€": "euros", "EUR": "euros",
    "£": "pounds", "GBP": "pounds",
    "¥": "yen", "JPY": "yen",
    "CNY": "yuan",
    "₹": "rupees", "INR": "rupees",
    "CAD": "canadian dollars",
    "AUD": "australian dollars",
    "NZD": "new zealand dollars",
    "CHF": "swiss francs",
    # Europe
    "SEK": "swedish krona",
    "NOK": "norwegian kroner",
    "DKK": "danish kroner",
    "PLN": "polish zloty",
    "CZK": "czech koruna",
    "HUF": "hungarian forint",
    "RON": "romanian leu",
    "BGN": "bulgarian lev",
    "HRK": "croatian kuna",
    "RSD": "serbian dinar",
    "TRY": "turkish lira",
    "RUB": "russian rubles",
    "BYN": "belarusian rubles",
    "UAH": "ukrainian hryvnias",
    "MDL": "moldovan leu",
    "GEL": "georgian lari",
    "AMD": "armenian drams",
    "AZN": "azerbaijani manat",
    # Moyen-Orient / Afrique
    "ILS": "israeli shekels",
    "AED": "emirati dirhams",
    "SAR": "saudi riyals",
    "QAR": "qatari riyals",
    "KWD": "kuwaiti dinars",
    "BHD": "bahraini dinars",
    "OMR": "omani rials",
    "EGP": "egyptian pounds",
    "ZAR": "south african rand",
    "NGN": "nigerian naira",
    "KES": "kenyan shillings",
    "GHS": "ghanaian cedis",
    "UGX": "ugandan shillings",
    "TZS": "tanzanian shillings",
    "RWF": "rwandan francs",
    "ETB": "ethiopian birr",
    "MAD": "moroccan dirhams",
    "TND": "tunisian dinars",
    "DZD": "algerian dinars",
    "LYD": "libyan dinars",
    "XAF": "central african francs",
    "XOF": "west african francs",
    # Amériques
    "BRL": "brazilian reais",
    "ARS": "argentine pesos",
    "CLP": "chilean pesos",
    "COP": "colombian pesos",
    "PEN": "peruvian soles",
    "BOB": "bolivian bolivianos",
    "UYU": "uruguayan pesos",
    "PYG": "paraguayan guaranis",
    "VES": "venezuelan bolivars",
    "GYD": "guyanese dollars",
    "SRD": "surinamese dollars",
    "TTD": "trinidad and tobago dollars",
    "JMD": "jamaican dollars",
    "BBD": "barbadian dollars",
    "BZD": "belize dollars",
    "GTQ": "guatemalan quetzals",
    "HNL": "honduran lempiras",
    "NIO": "nicaraguan cordobas",
    "CRC": "costa rican colons",
    "PAB": "panamanian balboas",
    "DOP": "dominican pesos",
    "HTG": "haitian gourdes",
    "CUP": "cuban pesos",
    "MXN": "mexican pesos",
    # Asie / Pacifique
    "KRW": "korean won", "₩": "korean won",
    "TWD": "taiwan dollars",
    "HKD": "hong kong dollars",
    "SGD": "singapore dollars",
    "MYR": "malaysian ringgit",
    "THB": "thai baht",
    "VND": "vietnamese dong",
    "IDR": "indonesian rupiah",
    "PHP": "philippine pesos",
    "BND": "brunei dollars",
    "KHR": "cambodian riels",
    "LAK": "lao kips",
    "MMK": "myanmar kyats",
    "BDT": "bangladeshi taka",
    "LKR": "sri lankan rupees",
    "MVR": "maldivian rufiyaa",
    "NPR": "nepalese rupees",
    "BTN": "bhutanese ngultrum",
    "PKR": "pakistani rupees",
    "AFN": "afghan afghanis",
    "UZS": "uzbek som",
    "KZT": "kazakhstani tenge",
    "KGS": "kyrgyzstani som",
    "TJS": "tajikistani somoni",
    "TMT": "turkmen manat",
    "MNT": "mongolian tugriks",
    "FJD": "fijian dollars",
    "TOP": "tongan paanga",
    "WST": "samoan tala",
    "VUV": "vanuatu vatu",
    "SBD": "solomon islands dollars",
    "PGK": "papua new guinea kina",
}

# Singuliers irréguliers (sinon on retire le "s" final)
SINGULAR_WORDS = {
    "dollars": "dollar",
    "euros": "euro",
    "pounds": "pound",
    "yen": "yen",
    "yuan": "yuan",
    "rupees": "rupee",
    "canadian dollars": "canadian dollar",
    "australian dollars": "australian dollar",
    "new zealand dollars": "new zealand dollar",
    "swiss francs": "swiss franc",
    "brazilian reais": "brazilian real",
    "argentine pesos": "argentine peso",
    "chilean pesos": "chilean peso",
    "colombian pesos": "colombian peso",
    "mexican pesos": "mexican peso",
    "philippine pesos": "philippine peso",
    "uruguayan pesos": "uruguayan peso",
    "dominican pesos": "dominican peso",
    "cuban pesos": "cuban peso",
    "korean won": "korean won",
}


def get_currency_word(currency: Optional[str]) -> str:
    return CURRENCY_WORDS.get(currency or "", "dollars")


def get_singular_currency(word: str) -> str:
    if word in SINGULAR_WORDS:
        return SINGULAR_WORDS[word]
    return word[:-1] if word.endswith("s") else word


def _valid_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def format_currency_for_tts(amount: Any, currency: str = "$") -> str:
    """
    Montant prononçable : "5 euros", "1 dollar", "3 pounds 50".

    Un montant invalide (None, NaN, inf) ou nul retourne "0".
    """
    value = _valid_number(amount)
    if value is None or value == 0:
        return "0"

    word = get_currency_word(currency)
    whole = math.floor(value)
    cents = round((value - whole) * 100)
    if cents == 100:
        whole, cents = whole + 1, 0

    if cents == 0:
        return f"1 {get_singular_currency(word)}" if whole == 1 else f"{whole} {word}"
    return f"{whole} {word} {cents}"
