"""Keyword classifiers and date parsing that work without the LLM."""

import re
import unicodedata
from datetime import date, datetime, time, timedelta
from typing import Optional

KEYWORDS_SALES = (
    "precio",
    "plan",
    "costo",
    "cobertura",
    "contratar",
    "servicio nuevo",
    "velocidad",
    "megas",
    "instalan",
    "conectan",
    "ofrecen",
    "informacion",
)
KEYWORDS_SUPPORT = (
    "no funciona",
    "lento",
    "corte",
    "sin internet",
    "problema",
    "falla",
    "reclamo",
    "no anda",
    "servicio tecnico",
    "visita",
)

KEYWORDS_ANGRY = ("mierda", "puta", "carajo", "desastre", "verguenza", "odio", "basura", "nunca anda")
KEYWORDS_FRUSTRATED = ("lento", "corta", "no puedo", "ayuda por favor", "solucion", "necesito")
KEYWORDS_HAPPY = ("gracias", "excelente", "solucionado", "genial", "perfecto", "muy bien")

AFFIRMATIVE_PHRASES = {
    "si",
    "sí",
    "si dale",
    "dale",
    "si metele",
    "metele",
    "metele pata",
    "de una",
    "joya",
    "si por favor",
    "claro",
    "obvio",
    "si quiero",
    "ok",
    "okey",
    "bueno",
    "confirmo",
}

WEEKDAYS = {
    "lunes": 0,
    "martes": 1,
    "miercoles": 2,
    "jueves": 3,
    "viernes": 4,
    "sabado": 5,
    "domingo": 6,
}

MONTHS = {
    "enero": 1,
    "febrero": 2,
    "marzo": 3,
    "abril": 4,
    "mayo": 5,
    "junio": 6,
    "julio": 7,
    "agosto": 8,
    "septiembre": 9,
    "setiembre": 9,
    "octubre": 10,
    "noviembre": 11,
    "diciembre": 12,
}

DEFAULT_APPOINTMENT_HOUR = 9
APPOINTMENT_DURATION = timedelta(hours=1)

TIME_PATTERN = re.compile(r"(?:a\s+las?|las?)\s+(\d{1,2})(?:[:.h](\d{2}))?\s*(?:hs|horas|h)?\s*(am|pm|de la tarde|de la mañana|de la noche)?")
NUMERIC_DATE_PATTERN = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
DAY_MONTH_PATTERN = re.compile(r"\b(\d{1,2})\s+de\s+([a-z]+)")


def normalize(text: str) -> str:
    """Lowercase and strip accents (ñ is kept)."""
    text = (text or "").lower().strip()
    text = text.replace("ñ", "\0")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return text.replace("\0", "ñ")


def classify_intent(text: str) -> str:
    message = normalize(text)
    # Support keywords win over sales keywords.
    if any(kw in message for kw in KEYWORDS_SUPPORT):
        return "soporte"
    if any(kw in message for kw in KEYWORDS_SALES):
        return "ventas"
    return "pregunta_general"


def analyze_sentiment(text: str) -> str:
    message = normalize(text)
    if any(kw in message for kw in KEYWORDS_ANGRY):
        return "enojado"
    if any(kw in message for kw in KEYWORDS_FRUSTRATED):
        return "frustrado"
    if any(kw in message for kw in KEYWORDS_HAPPY):
        return "contento"
    return "neutro"


def analyze_confirmation(text: str) -> str:
    """SI only for a clear affirmative; anything else is NO."""
    message = re.sub(r"[^\wñ ]", "", normalize(text)).strip()
    if message in {normalize(p) for p in AFFIRMATIVE_PHRASES}:
        return "SI"
    first = message.split(" ", 1)[0] if message else ""
    if first in {"si", "dale", "claro", "obvio"} and " no " not in f" {message} ":
        return "SI"
    return "NO"


def is_affirmative(text: str) -> bool:
    return analyze_confirmation(text) == "SI"


def _resolve_day(message: str, today: date) -> Optional[date]:
    message = re.sub(r"(de|por) la mañana", "", message)
    if "pasado mañana" in message:
        return today + timedelta(days=2)
    if re.search(r"\bmañana\b", message):
        return today + timedelta(days=1)
    if re.search(r"\bhoy\b", message):
        return today

    match = NUMERIC_DATE_PATTERN.search(message)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        year = int(match.group(3)) if match.group(3) else today.year
        if year < 100:
            year += 2000
        try:
            candidate = date(year, month, day)
        except ValueError:
            return None
        if not match.group(3) and candidate < today:
            candidate = candidate.replace(year=today.year + 1)
        return candidate

    match = DAY_MONTH_PATTERN.search(message)
    if match and match.group(2) in MONTHS:
        try:
            candidate = date(today.year, MONTHS[match.group(2)], int(match.group(1)))
        except ValueError:
            return None
        if candidate < today:
            candidate = candidate.replace(year=today.year + 1)
        return candidate

    for name, weekday in WEEKDAYS.items():
        if re.search(rf"\b{name}\b", message):
            delta = (weekday - today.weekday()) % 7
            return today + timedelta(days=delta or 7)
    return None


def _resolve_time(message: str) -> Optional[time]:
    match = TIME_PATTERN.search(message)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    suffix = match.group(3) or ""
    if suffix in ("pm", "de la tarde", "de la noche") and hour < 12:
        hour += 12
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def parse_spanish_datetime(text: str, now: datetime) -> Optional[tuple[datetime, datetime]]:
    """Parse expressions like "mañana a las 10" or "viernes a las 15:30".

    Returns (start, end) in the tzinfo of ``now`` with a one hour slot, or
    None when no day can be found in the text.
    """
    message = normalize(text)
    day = _resolve_day(message, now.date())
    at = _resolve_time(message)
    if day is None:
        if at is None:
            return None
        day = now.date()
    start = datetime.combine(day, at or time(DEFAULT_APPOINTMENT_HOUR), tzinfo=now.tzinfo)
    return start, start + APPOINTMENT_DURATION
