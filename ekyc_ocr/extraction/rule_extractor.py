"""Rule-based field extraction for national ID card OCR text.

Each field has an ordered list of regex rules; the first rule that matches
wins. English and Hindi labels are supported. A field that no rule matches
is simply absent from the result.
"""

import re
from dataclasses import asdict, dataclass, fields

from ekyc_ocr.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ExtractedFieldSet:
    """Structured fields read from one ID card image."""

    id_number: str | None = None
    name: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    address: str | None = None

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def found(self) -> list[str]:
        """Names of the fields that hold a value."""
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ExtractedFieldSet":
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


_SEP = r"[ \t]*[:：\-]?[ \t]*"

# Pattern definitions: (regex, flags)
# No further digit group may sit next to the 12 digits, so a 16 digit
# VID printed on the same card is not cut down to an ID number.
_NO_GROUP_BEFORE = r"(?<!\d)(?<!\d[ \t\-])(?<!\d[ \t\-]{2})(?<!\d[ \t\-]{3})"
_NO_GROUP_AFTER = r"(?![ \t\-]*\d)"
_ID_NUMBER_PATTERNS: list[tuple[str, int]] = [
    (
        rf"{_NO_GROUP_BEFORE}\d{{4}}([ \t]+|[ \t]*-[ \t]*)\d{{4}}\1\d{{4}}{_NO_GROUP_AFTER}",
        0,
    ),
    (rf"{_NO_GROUP_BEFORE}\d{{4}}[ \t\-]*\d{{4}}[ \t\-]*\d{{4}}{_NO_GROUP_AFTER}", 0),
]

_NAME_LABEL = r"(?:(?<![A-Za-z])Name(?![A-Za-z])|नाम)"
_NAME_PATTERNS: list[tuple[str, int]] = [
    (
        rf"^[ \t]*{_NAME_LABEL}(?:[ \t]*/[ \t]*{_NAME_LABEL})?{_SEP}(\S[^\n]*)",
        re.IGNORECASE | re.MULTILINE,
    ),
    (rf"{_NAME_LABEL}[ \t]*[:：][ \t]*(\S[^\n]*)", re.IGNORECASE),
]

_DOB_LABEL = (
    r"(?:(?<![A-Za-z])D\.?O\.?B\.?(?![A-Za-z])|Date\s+of\s+Birth|Birth\s+Date"
    r"|जन्म\s*तिथि|जन्म\s*की\s*तारीख)"
)
_DATE = r"(\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4})(?!\d)"
_DOB_PATTERNS: list[tuple[str, int]] = [
    (rf"{_DOB_LABEL}(?:[ \t]*/[ \t]*{_DOB_LABEL})?{_SEP}{_DATE}", re.IGNORECASE),
    (rf"{_DOB_LABEL}[^\n\d]{{0,20}}{_DATE}", re.IGNORECASE),
]

# (regex, canonical token); female is tried first
_GENDER_PATTERNS: list[tuple[str, str]] = [
    (r"(?<![A-Za-z])female(?![A-Za-z])|महिला", "FEMALE"),
    (r"(?<![A-Za-z])male(?![A-Za-z])|पुरुष", "MALE"),
]

_ADDRESS_PATTERNS: list[tuple[str, int]] = [
    (
        r"(?:(?<![A-Za-z])Address(?![A-Za-z])|पता)[ \t]*[:：]?[ \t]*([^\n]*)",
        re.IGNORECASE,
    ),
]

_CAPS_LABEL = re.compile(r"^[ \t]*[A-Z][A-Z0-9 .'/()\-]{0,30}[:：]")
_FIELD_LABEL = re.compile(
    rf"^[ \t]*(?:{_NAME_LABEL}|{_DOB_LABEL}|Gender|Sex|लिंग)[ \t]*[:：/]",
    re.IGNORECASE,
)


def canonical_id_number(raw: str) -> str | None:
    """Strip separators and re-space a 12 digit ID as ``NNNN NNNN NNNN``.

    Returns ``None`` if ``raw`` does not contain exactly 12 digits.
    """
    digits = re.sub(r"\D", "", raw)
    if len(digits) != 12:
        return None
    return f"{digits[:4]} {digits[4:8]} {digits[8:]}"


def _clean_line(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip(" \t,;:")


class FieldExtractor:
    """Regex-based extractor for ID card fields.

    ``extract`` is total: any input, including non-text, produces an
    :class:`ExtractedFieldSet`, possibly empty.
    """

    def __init__(self) -> None:
        self.patterns: dict[str, list[tuple[str, int]]] = {
            "id_number": _ID_NUMBER_PATTERNS,
            "name": _NAME_PATTERNS,
            "date_of_birth": _DOB_PATTERNS,
        }

    def extract(self, text: str) -> ExtractedFieldSet:
        """Extract all known fields from OCR text.

        Args:
            text: Raw OCR text.

        Returns:
            Field set; fields without a matching rule are ``None``.
        """
        if not isinstance(text, str) or not text.strip():
            return ExtractedFieldSet()

        result = ExtractedFieldSet(
            id_number=self.extract_id_number(text),
            name=self._first_group("name", text),
            date_of_birth=self._first_group("date_of_birth", text),
            gender=self.extract_gender(text),
            address=self.extract_address(text),
        )
        logger.info(
            "Rule extraction found %d fields: %s",
            len(result.found()),
            ", ".join(result.found()) or "none",
        )
        return result

    def _first_group(self, field_name: str, text: str) -> str | None:
        for pattern, flags in self.patterns[field_name]:
            match = re.search(pattern, text, flags)
            if match:
                value = _clean_line(match.group(match.lastindex or 0))
                if value:
                    return value
        return None

    def extract_id_number(self, text: str) -> str | None:
        """Return the first 12 digit ID number in canonical spacing."""
        for pattern, flags in self.patterns["id_number"]:
            match = re.search(pattern, text, flags)
            if match:
                value = canonical_id_number(match.group(0))
                if value:
                    logger.debug("Found ID number with pattern %s", pattern)
                    return value
        return None

    def extract_gender(self, text: str) -> str | None:
        """Map the first gender word found to ``MALE`` or ``FEMALE``."""
        for pattern, token in _GENDER_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                return token
        return None

    def extract_address(self, text: str) -> str | None:
        """Return the address block following an ``Address`` label.

        The block continues over following lines until a blank line, an
        all-caps ``LABEL:`` line, or another known field label.
        """
        for pattern, flags in _ADDRESS_PATTERNS:
            match = re.search(pattern, text, flags)
            if not match:
                continue

            parts = [_clean_line(match.group(1))]
            for line in text[match.end():].split("\n")[1:]:
                if not line.strip():
                    break
                if _CAPS_LABEL.match(line) or _FIELD_LABEL.match(line):
                    break
                parts.append(_clean_line(line))

            value = ", ".join(p for p in parts if p)
            if value:
                return value
        return None
