"""
Base utilities for normalizing Tally XML responses.

Tally's XML is inconsistently shaped: a field can arrive as a bare string,
as an object carrying attributes with the text under `_`, or as a list when
the element repeats. Amounts arrive formatted for humans ("1,23,456.78 Dr").
Everything in this module is tolerant and never raises on odd input.

Provides:
- XML sanitization and parsing into a nested dict tree
- Text, amount, boolean, integer and date coercion
- Collection lookup and list coercion
- Case-insensitive, multi-candidate field access (TallyRecord)
- Per-record fault isolation (normalize_batch)
"""
from __future__ import annotations
import math
import re
from datetime import datetime, date
from typing import Any, Callable, Iterable, Optional
import xmltodict
from loguru import logger

from ..models import BatchResult, RecordFailure

_MISSING = object()

TRUE_VALUES = ("yes", "true", "1", "on")

_CURRENCY_RE = re.compile(r"(?i)(rs\.?|inr|[₹$€£¥])")
_DR_CR_RE = re.compile(r"(?i)^(dr|cr)\.?(?=[\d(.\-])|(?<=[\d).])(dr|cr)\.?$")
_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally sometimes produces XML with control characters, character
    references to control characters (&#4;) or bare ampersands in names.
    """
    if not xml_text:
        return xml_text

    xml_text = xml_text.replace("\x00", "")

    # Character references for control chars, except tab, newline and CR
    xml_text = re.sub(r"&#([0-8]|1[0-2]|1[4-9]|2[0-9]|3[01]);", "", xml_text)
    xml_text = re.sub(r"&#x([0-8bBcCeEfF]|1[0-9a-fA-F]);", "", xml_text)

    # XML 1.0 only allows #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD]
    xml_text = "".join(
        c for c in xml_text
        if c in "\t\n\r" or 0x20 <= ord(c) <= 0xD7FF or 0xE000 <= ord(c) <= 0xFFFD
    )

    # Unescaped ampersands (but not valid entities)
    xml_text = re.sub(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)", "&amp;", xml_text)

    return xml_text


def parse_xml(xml_text: str) -> dict:
    """
    Parse a Tally response into a nested dict tree.

    Attributes are merged into the element's dict as plain keys and element
    text next to attributes lands under `_`. Empty input yields `{}`.
    """
    if not xml_text or not xml_text.strip():
        return {}
    return xmltodict.parse(
        sanitize_xml(xml_text),
        attr_prefix="",
        cdata_key="_",
        strip_whitespace=True,
    ) or {}


def extract_text(node: Any) -> str:
    """
    Extract the text content of a tree node.

    - None -> ""
    - {"_": "x", "TYPE": "String"} -> "x" (also "#text")
    - {"NAME": "x"} wrappers (e.g. NAME.LIST) -> "x"
    - lists -> first non-empty item
    - numbers -> their string form
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node.strip()
    if isinstance(node, bool):
        return "Yes" if node else "No"
    if isinstance(node, (int, float)):
        return str(node)
    if isinstance(node, dict):
        for key in ("_", "#text", "NAME", "name"):
            if key in node:
                return extract_text(node[key])
        return ""
    if isinstance(node, (list, tuple)):
        for item in node:
            value = extract_text(item)
            if value:
                return value
        return ""
    return str(node).strip()


def as_list(value: Any) -> list:
    """Coerce a repeated-element node to a list (a single child comes back bare)."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_amount(value: Any, default: float = 0.0) -> float:
    """
    Parse a Tally amount or quantity to float. Never raises.

    Handles:
    - Thousands separators (1,23,456.78)
    - Currency symbols and tokens (₹, $, Rs., INR)
    - Dr / Cr prefix or suffix (Dr positive, Cr negative)
    - Parentheses for negatives ((1234.56))
    - Unit suffixes ("10 Nos", "125.00/Nos")
    - Empty, null or non-finite input -> default
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default
    if isinstance(value, (dict, list, tuple)):
        value = extract_text(value)

    s = str(value).strip()
    if not s or s.lower() in ("null", "none", "undefined", "nan"):
        return default

    # Rates come as "125.00/Nos"
    s = s.split("/", 1)[0]
    s = re.sub(r"\s+", "", s).replace(",", "")

    negative = False
    match = _DR_CR_RE.search(s)
    if match:
        marker = (match.group(1) or match.group(2)).lower()
        s = s[:match.start()] + s[match.end():]
        if marker == "cr":
            negative = True

    s = _CURRENCY_RE.sub("", s)
    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1]
        negative = not negative

    # Whatever is left after the markers is reduced to its digits, so stray text
    # around a number is tolerated ("Invoice 42" is 42.0, "1e999" is 1999.0)
    s = _NON_NUMERIC_RE.sub("", s)
    try:
        number = float(s)
    except ValueError:
        logger.debug(f"Could not parse amount: {value!r}")
        return default
    if not math.isfinite(number):
        return default
    return -number if negative else number


def parse_int(value: Any, default: int = 0) -> int:
    """Parse Tally integer string ("123.0" style included)."""
    if value is None or value == "":
        return default
    number = parse_amount(value, default=float("nan"))
    if math.isnan(number):
        return default
    return int(number)


def parse_bool(value: Any) -> bool:
    """
    Parse a Tally flag. Yes/true/1/on (any case) are true, everything else false.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (dict, list, tuple)):
        value = extract_text(value)
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


def parse_tally_date(value: Any) -> Optional[date]:
    """
    Parse Tally date string to Python date.

    Tally uses multiple date formats:
    - YYYYMMDD (most common)
    - YYYY-MM-DD
    - DD-MMM-YYYY (e.g., "1-Apr-2024") and DD-MMM-YY

    Returns None for empty or unparseable strings.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = extract_text(value)
    if not s or s.lower() in ("null", "none"):
        return None

    formats = [
        "%Y%m%d",
        "%Y-%m-%d",
        "%d-%b-%Y",
        "%d-%b-%y",
        "%d/%m/%Y",
        "%d-%m-%Y",
    ]
    for fmt in formats:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    logger.warning(f"Could not parse date: {s}")
    return None


def iso_date(value: Any) -> Optional[str]:
    """Tally date -> ISO string (documents store dates as text)."""
    parsed = parse_tally_date(value)
    return parsed.isoformat() if parsed else None


def _child(node: Any, name: str) -> Any:
    if not isinstance(node, dict):
        return _MISSING
    for key in (name, name.lower(), name.capitalize()):
        if key in node:
            return node[key]
    return _MISSING


def _first_with(node: Any, name: str) -> Any:
    """Return node[name], looking into each item when node is a list."""
    for item in as_list(node) if isinstance(node, list) else [node]:
        child = _child(item, name)
        if child is not _MISSING:
            return child
    return _MISSING


def find_collection(tree: Any) -> Optional[dict]:
    """
    Locate ENVELOPE -> BODY -> DATA -> COLLECTION in a parsed response.

    Returns an empty dict for an empty collection and None (with a warning)
    when the response does not have that shape at all.
    """
    envelope = _child(tree, "ENVELOPE")
    if envelope is _MISSING:
        envelope = tree

    node = envelope
    for name in ("BODY", "DATA", "COLLECTION"):
        node = _first_with(node, name)
        if node is _MISSING:
            logger.warning(f"Tally response has no {name} node; treating as empty")
            return None

    if isinstance(node, list):
        node = next((item for item in node if isinstance(item, dict)), None)
    return node if isinstance(node, dict) else {}


def extract_entities(tree: Any, tag: str) -> list:
    """Return the raw entities of one type from a collection response."""
    collection = find_collection(tree)
    if not collection:
        return []
    entities = _child(collection, tag)
    return [] if entities is _MISSING else as_list(entities)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class TallyRecord:
    """
    Case-insensitive, multi-candidate view over one raw Tally entity.

    Each accessor takes candidate field names in priority order and returns
    the first one present, so every logical field has exactly one lookup.
    """

    def __init__(self, raw: Any):
        if not isinstance(raw, dict):
            raise TypeError(f"expected an element, got {type(raw).__name__}")
        self.raw = raw
        self._keys = {}
        for key in raw:
            self._keys.setdefault(str(key).upper(), key)

    def get(self, *names: str, default: Any = None) -> Any:
        """First non-blank value among the candidate names."""
        for name in names:
            if name in self.raw and not _is_blank(self.raw[name]):
                return self.raw[name]
            key = self._keys.get(name.upper())
            if key is not None and not _is_blank(self.raw[key]):
                return self.raw[key]
        return default

    def text(self, *names: str, default: str = "") -> str:
        for name in names:
            value = extract_text(self.get(name))
            if value:
                return value
        return default

    def amount(self, *names: str, default: float = 0.0) -> float:
        value = self.get(*names)
        return parse_amount(value, default) if value is not None else default

    def first_amount(self, names: Iterable[str]) -> float:
        """First non-zero amount among the candidates (0.0 if all are zero)."""
        for name in names:
            value = self.amount(name)
            if value != 0:
                return value
        return 0.0

    def flag(self, *names: str, default: bool = False) -> bool:
        value = self.get(*names)
        return parse_bool(value) if value is not None else default

    def integer(self, *names: str, default: int = 0) -> int:
        return parse_int(self.get(*names), default)

    def date(self, *names: str) -> Optional[str]:
        return iso_date(self.get(*names))

    def items(self, *names: str) -> list:
        return as_list(self.get(*names))

    def texts(self, *names: str) -> list[str]:
        """All non-empty texts of a repeated element."""
        return [t for t in (extract_text(item) for item in self.items(*names)) if t]


def normalize_batch(
    raw_items: Iterable[Any],
    normalizer: Callable[[Any], dict],
    entity: str,
) -> BatchResult:
    """
    Normalize raw entities one by one.

    A record whose normalizer raises is dropped with a warning naming its
    index; the rest of the batch still goes through.
    """
    result = BatchResult(entity=entity)
    for index, raw in enumerate(raw_items):
        try:
            result.records.append(normalizer(raw))
        except Exception as e:
            name = ""
            if isinstance(raw, dict):
                name = extract_text(raw.get("NAME")) or extract_text(raw.get("VOUCHERNUMBER"))
            logger.warning(f"Skipping {entity} record #{index} {name!r}: {e}")
            result.failures.append(RecordFailure(index=index, reason=str(e), name=name, raw=raw))
    return result
