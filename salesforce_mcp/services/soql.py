"""SOQL string helpers."""
import re
from typing import Any, Dict, List, Optional

_LIMIT_KEYWORD = re.compile(r"\bLIMIT\b", re.IGNORECASE)
_LIMIT_VALUE = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_RECORD_ID = re.compile(r"^[a-zA-Z0-9]{15}(?:[a-zA-Z0-9]{3})?$")


def soql_quote(value: str) -> str:
    """Escape ``value`` for use inside a single-quoted SOQL literal."""
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def clean_query(query: str) -> str:
    """Collapse whitespace so multi-line queries travel as one line."""
    return " ".join(query.strip().split())


def has_limit_clause(query: str) -> bool:
    return bool(_LIMIT_KEYWORD.search(query))


def extract_limit(query: str) -> Optional[int]:
    """Numeric LIMIT of ``query``, or None when absent or bound to a variable."""
    match = _LIMIT_VALUE.search(query)
    return int(match.group(1)) if match else None


def is_record_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_RECORD_ID.match(value))


def strip_attributes(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop Salesforce ``attributes`` blocks, including on nested lookups."""
    for record in records:
        if not isinstance(record, dict):
            continue
        record.pop("attributes", None)
        for value in record.values():
            if isinstance(value, dict):
                value.pop("attributes", None)
    return records
