"""
Address normalization for cache keys.

Two raw strings that differ only in case, spacing or punctuation resolve to
the same cache entry.
"""

import re

_WHITESPACE = re.compile(r"\s+")
_SPECIAL = re.compile(r"[^\w\s,.\-]", re.UNICODE)
_COMMAS = re.compile(r"\s*,(\s*,)*\s*")


def normalize_address(address: str | None) -> str:
    """
    Canonicalize a raw address.

    Lowercases, trims, removes punctuation other than ``,`` ``.`` ``-``,
    collapses repeated commas and whitespace, and strips leading/trailing
    commas.

    >>> normalize_address("  1600 Amphitheatre Pkwy,,  Mountain View; CA ")
    '1600 amphitheatre pkwy, mountain view ca'
    """
    if not address:
        return ""
    text = address.lower().strip()
    text = _SPECIAL.sub(" ", text)
    text = _COMMAS.sub(", ", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip(" ,")
