"""
Message template renderer — substitutes lead fields into step content.

  {{name}}   → first whitespace-delimited token of the lead's name
  {{phone}}  → phone with every non-digit stripped
  {{other}}  → the lead field's value, or "" when missing

Pure functions; rendering never raises.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Union

from pydantic import BaseModel

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
NON_DIGIT = re.compile(r"\D")

LeadLike = Union[BaseModel, Mapping[str, Any], None]


def digits_only(value: Any) -> str:
    return NON_DIGIT.sub("", str(value or ""))


def normalize_phone(phone: Any) -> str:
    """
    Digits only, with Mexican mobiles forced to 521 + 10 digits:
      10 digits            → 521 + number
      12 digits, 52 prefix → 521 + rest
    Anything else is returned as bare digits.
    """
    num = digits_only(phone)
    if len(num) == 10:
        return "521" + num
    if len(num) == 12 and num.startswith("52"):
        return "521" + num[2:]
    return num


def first_name(full: Any) -> str:
    parts = str(full or "").split()
    return parts[0] if parts else ""


def _as_mapping(lead: LeadLike) -> Mapping[str, Any]:
    if lead is None:
        return {}
    if isinstance(lead, BaseModel):
        return lead.model_dump()
    if isinstance(lead, Mapping):
        return lead
    return {}


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value)
    return str(value)


def render(template: Any, lead: LeadLike) -> str:
    """Replace every {{key}} token in template with the matching lead field."""
    if not template:
        return ""
    try:
        fields = _as_mapping(lead)

        def replacer(match: re.Match) -> str:
            key = match.group(1)
            if key == "name":
                return first_name(fields.get("name"))
            if key == "phone":
                return digits_only(fields.get("phone"))
            return _stringify(fields.get(key))

        return PLACEHOLDER.sub(replacer, str(template))
    except Exception:
        return ""
