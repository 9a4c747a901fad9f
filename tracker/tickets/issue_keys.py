from __future__ import annotations

import re

from .models import TicketType

_TYPE_CODES: dict[TicketType, str] = {
    TicketType.SUPPORT: "S",
    TicketType.FEATURE_REQUEST: "R",
}

_PRODUCT_CODE_RE = re.compile(r"^[A-Z][A-Z0-9]{1,15}$")


def type_code(ticket_type: TicketType) -> str:
    return _TYPE_CODES[ticket_type]


def normalize_product_code(product_code: str) -> str:
    """Upper-case and validate a product code used as the key prefix."""

    code = (product_code or "").strip().upper()
    if not _PRODUCT_CODE_RE.match(code):
        raise ValueError(f"Invalid product code: {product_code!r}")
    return code


def format_issue_key(product_code: str, ticket_type: TicketType, number: int) -> str:
    """Build keys such as ``CSUP-S001`` or ``HRMS-R042``."""

    if number < 1:
        raise ValueError("Issue numbers start at 1")
    return f"{product_code}-{type_code(ticket_type)}{number:03d}"
