"""Default free-text metadata parser.

Clinic staff encode appointment details directly in event titles, e.g.
``"2da dosis clustoid 0,3 ml (25/50) llego"``.  The sync engine treats the
parser as a pluggable ``(summary, description) -> EventMetadata`` callable;
this module provides the default heuristics.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable, Sequence

from pydantic import BaseModel

CATEGORY_SUBCUTANEOUS = "Tratamiento subcutáneo"
CATEGORY_TESTS = "Test y exámenes"
CATEGORY_CONSULTATION = "Consulta médica"
CATEGORY_CONTROL = "Control médico"
CATEGORY_LICENSE = "Licencia médica"
CATEGORY_ROXAIR = "Roxair"
CATEGORY_INJECTION = "Servicio de inyección"

STAGE_MAINTENANCE = "Mantención"
STAGE_INDUCTION = "Inducción"

MAX_REASONABLE_AMOUNT = 100_000_000


class EventMetadata(BaseModel):
    """Domain fields parsed out of an event's summary and description."""

    category: str | None = None
    amount_expected: int | None = None
    amount_paid: int | None = None
    attended: bool | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    treatment_stage: str | None = None
    control_included: bool = False
    is_domicilio: bool = False


MetadataParser = Callable[[str | None, str | None], EventMetadata]


def _compile(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


_TEST_PATTERNS = _compile(
    r"\bexam[eé]n(es)?\b",
    r"test\s*(de\s*)?parche",
    r"lectura\s*(de\s*)?parche",
    r"\btest\b",
    r"prick",
    r"aeroal[eé]rgenos?",
)
_SUBCUT_PATTERNS = _compile(
    r"cl[au]s[i]?t[oau]?id[eo]?",
    r"\bclust",
    r"alxoid",
    r"cluxin",
    r"oral[\s-]?tec",
    r"vacuna",
    r"\bsubcut[áa]ne[oa]",
    r"\d+[ªº]?\s*(era|ta|da|ra|va)?\s*dosis",
    r"\d+([.,]\d+)?\s*(ml|cc)\b",
)
_ROXAIR_PATTERNS = _compile(r"\broxair\b")
_INJECTION_PATTERNS = _compile(
    r"\bbetametasona\b",
    r"\binyecci[oó]n\b",
    r"\blo\s+trae\b",
    r"\btrae\s+(?:su|el)?\s*medicamento\b",
)
_LICENSE_PATTERNS = _compile(r"\blic\b", r"\blicencia\b")
_CONTROL_PATTERNS = _compile(r"\bcontrol\b", r"\d{1,2}:\d{2}control", r"confirma\s*control")
_CONSULTATION_PATTERNS = _compile(
    r"\bconsulta\b",
    r"\d+(era|da|ra)?\s*consulta",
    r"\btelemedicina\b",
    r"\bdoctoralia\b",
)
_IGNORE_PATTERNS = _compile(
    r"^recordar\b",
    r"\bferiado\b",
    r"^vacaciones$",
    r"^reuni[oó]n\b",
    r"^reservado$",
)
_DECIMAL_DOSAGE_PATTERN = re.compile(r"\b(\d+[.,]\d{1,2})\b")

_ATTENDED_PATTERNS = _compile(r"\blleg[oó]\b", r"\basist[ií]o\b")
_MONEY_CONFIRMED_PATTERNS = _compile(
    r"\blleg[oó]\b", r"\benv[ií][oó]\b", r"\btransferencia\b", r"\bpagado\b"
)
_DOMICILIO_PATTERNS = _compile(r"\bdomicilio\b", r"\bse\s+l[ao]\s+llev[oó]\b")
_SIN_COSTO_PATTERN = re.compile(r"\bs/?c\b|sincosto|sin\s*costo", re.IGNORECASE)
_PHONE_PATTERNS = _compile(r"^9\d{8}$", r"^569\d{8}$", r"^56\d{9}$")

_INDUCTION_PATTERNS = _compile(
    r"\b1[º°]?(?:era|ra|er)?\s*dosis\b",
    r"\bprim(?:er)?a?\s*dosis\b",
    r"\b[2-5][º°]?(?:da|ra|ta|va|a)?\s*dosis\b",
    r"(?:segunda|tercera|cuarta|quinta)\s*dosis\b",
)
_MAINTENANCE_PATTERNS = _compile(
    r"\bmantenci[oó]n\b", r"\bmant\b", r"\bmensual\b", r"\bdosis\s+clust(?:oid)?\b"
)
_DOSAGE_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)\s*(ml|cc|mg)\b", re.IGNORECASE)

_SLASH_AMOUNT_PATTERN = re.compile(r"\((\d+)\s*/\s*(\d+)\)")
_PAREN_PATTERN = re.compile(r"\(([^)]+)\)")
_PAID_PATTERN = re.compile(r"pagado\s*(\d+)", re.IGNORECASE)
_DATE_FRAGMENT_PATTERN = re.compile(r"\b\d{1,2}-\d{1,2}\b")


def _matches_any(text: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def _normalize_amount(raw: str) -> int | None:
    """Turn a raw amount fragment into whole currency units.

    Short values are thousands shorthand (``50`` means ``50000``); phone
    numbers and implausibly long digit runs are rejected.
    """
    digits = re.sub(r"[^0-9]", "", raw)
    if not digits or len(digits) > 8:
        return None
    if _matches_any(digits, _PHONE_PATTERNS):
        return None
    value = int(digits)
    if value <= 0:
        return None
    normalized = value if value >= 1000 else value * 1000
    if normalized > MAX_REASONABLE_AMOUNT:
        return None
    return normalized


def _extract_amounts(text: str) -> tuple[int | None, int | None]:
    expected: int | None = None
    paid: int | None = None

    for match in _SLASH_AMOUNT_PATTERN.finditer(text):
        paid_value = _normalize_amount(match.group(1))
        expected_value = _normalize_amount(match.group(2))
        if paid is None and paid_value is not None:
            paid = paid_value
        if expected is None and expected_value is not None:
            expected = expected_value

    for match in _PAREN_PATTERN.finditer(text):
        content = match.group(1)
        if re.fullmatch(r"\d+\s*/\s*\d+", content.strip()):
            continue
        amount = _normalize_amount(_DATE_FRAGMENT_PATTERN.sub("", content))
        if amount is None:
            continue
        if "pagado" in content.lower():
            paid = amount
            if expected is None:
                expected = amount
        elif expected is None:
            expected = amount

    for match in _PAID_PATTERN.finditer(text):
        amount = _normalize_amount(match.group(1))
        if amount is not None:
            paid = amount
            if expected is None:
                expected = amount

    if _SIN_COSTO_PATTERN.search(text):
        return 0, 0

    if paid is None and expected is not None and _matches_any(text, _MONEY_CONFIRMED_PATTERNS):
        paid = expected
    return expected, paid


def _classify_category(summary: str, text: str) -> str | None:
    lowered = text.lower()
    if _matches_any(summary.lower(), _IGNORE_PATTERNS):
        return None
    if _matches_any(lowered, _TEST_PATTERNS):
        return CATEGORY_TESTS
    if _matches_any(lowered, _SUBCUT_PATTERNS):
        return CATEGORY_SUBCUTANEOUS
    if _matches_any(lowered, _ROXAIR_PATTERNS):
        return CATEGORY_ROXAIR
    if _matches_any(lowered, _INJECTION_PATTERNS):
        return CATEGORY_INJECTION
    if _matches_any(lowered, _LICENSE_PATTERNS):
        return CATEGORY_LICENSE
    if _matches_any(lowered, _CONTROL_PATTERNS):
        return CATEGORY_CONTROL
    if _matches_any(lowered, _CONSULTATION_PATTERNS):
        return CATEGORY_CONSULTATION
    if _DECIMAL_DOSAGE_PATTERN.search(lowered):
        return CATEGORY_SUBCUTANEOUS
    return None


def _extract_dosage(text: str) -> tuple[float | None, str | None]:
    match = _DOSAGE_PATTERN.search(text)
    if match:
        return float(match.group(1).replace(",", ".")), match.group(2).lower()
    decimal = re.search(r"\b(0[.,]\d+)\b", text)
    if decimal:
        return float(decimal.group(1).replace(",", ".")), "ml"
    if _matches_any(text, _MAINTENANCE_PATTERNS):
        return 0.5, "ml"
    return None, None


def _detect_stage(text: str, dosage_value: float | None) -> str | None:
    if _matches_any(text, _INDUCTION_PATTERNS):
        return STAGE_INDUCTION
    if _matches_any(text, _MAINTENANCE_PATTERNS):
        return STAGE_MAINTENANCE
    if dosage_value is not None:
        return STAGE_INDUCTION if dosage_value < 0.5 else STAGE_MAINTENANCE
    return None


def parse_event_metadata(summary: str | None, description: str | None) -> EventMetadata:
    """Extract category, amounts, attendance and treatment details from free text."""
    summary_text = unicodedata.normalize("NFC", summary or "")
    description_text = unicodedata.normalize("NFC", description or "")
    text = f"{summary_text} {description_text}"

    expected, paid = _extract_amounts(text)
    category = _classify_category(summary_text, text)
    is_domicilio = _matches_any(text, _DOMICILIO_PATTERNS)
    if is_domicilio and expected is not None and not paid:
        paid = expected

    dosage_value: float | None = None
    dosage_unit: str | None = None
    stage: str | None = None
    if category == CATEGORY_SUBCUTANEOUS:
        dosage_value, dosage_unit = _extract_dosage(text)
        stage = _detect_stage(text, dosage_value)

    return EventMetadata(
        category=category,
        amount_expected=expected,
        amount_paid=paid,
        attended=True if _matches_any(text, _ATTENDED_PATTERNS) else None,
        dosage_value=dosage_value,
        dosage_unit=dosage_unit,
        treatment_stage=stage,
        control_included=_matches_any(text, _CONTROL_PATTERNS),
        is_domicilio=is_domicilio,
    )
