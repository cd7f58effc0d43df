# Overview: Company code derivation and the ordered resolution chain.

"""
Company codes prefix every voucher number ({CODE}-{YYYYMMDD}-{SEQ}).

A code is derived once from the shop name when the account/profile is
created and is stable afterwards. Where several sources may hold a code
(token claim, user row, header, local settings...) the caller lists them in
precedence order and resolve_company_code picks the first usable one.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional


DEFAULT_COMPANY_CODE = "GUR"
COMPANY_CODE_LENGTH = 3

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_company_code(value) -> Optional[str]:
    """Uppercase, alphanumerics only. None when nothing usable remains."""
    if value is None:
        return None
    cleaned = _NON_ALNUM.sub("", str(value).upper())
    return cleaned or None


def derive_company_code(shop_name: Optional[str], *, length: int = COMPANY_CODE_LENGTH,
                        default: str = DEFAULT_COMPANY_CODE) -> str:
    """
    Derive a company code from a shop name.

    "Guru Stores" -> "GUR", "7-Eleven" -> "7EL", "" -> default
    """
    cleaned = normalize_company_code(shop_name)
    if not cleaned:
        return default
    return cleaned[:length]


def resolve_company_code(candidates: Iterable, default: str = DEFAULT_COMPANY_CODE) -> str:
    """
    Return the first present candidate, normalized; default if none is.

    Candidates may be plain values or zero-argument callables (evaluated
    lazily, in order, so expensive sources like a DB lookup only run when
    every earlier source came up empty).
    """
    for candidate in candidates:
        value = candidate() if callable(candidate) else candidate
        code = normalize_company_code(value)
        if code:
            return code
    return default
