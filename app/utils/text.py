import re
import unicodedata
from typing import List, Optional

SUPPORTED_LANGUAGES = ("english", "manglish", "hinglish")

# Transliterated markers; two hits are not required, one is enough for short DMs
MANGLISH_MARKERS = {
    "venam", "vanganam", "kittumo", "cheyyanam", "cheyyamo", "undo", "undu", "alle", "enthanu",
    "ethra", "evide", "onnu", "randu", "moonnu", "tharumo", "tharanam", "edukkanam", "aano", "aanu",
    "chetta", "chechi", "veegam", "thirakku", "ningal", "enikku",
}
HINGLISH_MARKERS = {
    "hai", "kya", "kitna", "kitne", "chahiye", "kaise", "kahan", "bhai", "mujhe", "karna", "lena",
    "hain", "nahi", "accha", "acha", "kab", "dijiye", "batao", "kharidna", "paisa",
}

_PUNCT = re.compile(r"[^\w\s]", re.UNICODE)
_PHONE = re.compile(r"(?:\+?\d[\d\s-]{8,}\d)")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize(text: Optional[str]) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""
    if not text:
        return ""
    cleaned = _PUNCT.sub(" ", strip_accents(text).lower())
    return " ".join(cleaned.split())


def tokens(text: Optional[str]) -> List[str]:
    return normalize(text).split()


def singular(token: str) -> str:
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("es") and token[-3] in "sxz":
        return token[:-2]
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def detect_language(text: Optional[str]) -> str:
    words = set(tokens(text))
    manglish = len(words & MANGLISH_MARKERS)
    hinglish = len(words & HINGLISH_MARKERS)
    if manglish == 0 and hinglish == 0:
        return "english"
    return "manglish" if manglish >= hinglish else "hinglish"


def extract_phone(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = _PHONE.search(text)
    if not m:
        return None
    digits = "".join(ch for ch in m.group(0) if ch.isdigit() or ch == "+")
    return digits if len(digits.lstrip("+")) >= 10 else None


def format_price(amount: float) -> str:
    if float(amount).is_integer():
        return f"₹{int(amount):,}"
    return f"₹{amount:,.2f}"
