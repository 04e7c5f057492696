import re
import unicodedata
from collections.abc import Mapping
from typing import Optional


TAG_TABLE_PREFIX = "t"
FIELD_TABLE_PREFIX = "s"
MAX_IDENTIFIER_BYTES = 63

_SEPARATORS = re.compile(r"[\s\-/.]+")
_UNSAFE = re.compile(r"[^a-z0-9_]+")


def normalize_name(value: str) -> str:
    """Reduce a data-derived name to ``[a-z0-9_]``.

    Accents are folded to their ASCII base letter, separators (whitespace,
    ``-``, ``/``, ``.``) become ``_`` and everything else unsafe is removed.
    """
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    lowered = folded.strip().lower()
    return _UNSAFE.sub("", _SEPARATORS.sub("_", lowered))


def map_name(name: str, name_map: Optional[Mapping[str, str]]) -> str:
    if not name_map:
        return name
    for old, new in name_map.items():
        name = name.replace(old, new)
    return name


def check_identifier(name: str) -> str:
    escaped = name.replace('"', '""')
    if len(escaped.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        raise ValueError(f"postgresql identifier too long: {name}")
    return name


def quote_ident(name: str) -> str:
    check_identifier(name)
    return '"' + name.replace('"', '""') + '"'


def tag_table(series_name: str) -> str:
    return check_identifier(TAG_TABLE_PREFIX + series_name)


def field_table(series_name: str) -> str:
    return check_identifier(FIELD_TABLE_PREFIX + series_name)
