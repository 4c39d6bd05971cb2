"""Mapping between numeric DNS record types and their mnemonics.

Only the types the DNS JSON API round trip knows how to rebuild are listed;
anything else raises ``UnsupportedType``.
"""

from __future__ import annotations

from typing import Dict

from .errors import UnsupportedType

SUPPORTED_TYPES: Dict[int, str] = {
    1: "A",
    2: "NS",
    5: "CNAME",
    6: "SOA",
    12: "PTR",
    15: "MX",
    16: "TXT",
    28: "AAAA",
    99: "SPF",
    255: "ANY",
}

_BY_MNEMONIC: Dict[str, int] = {name: code for code, name in SUPPORTED_TYPES.items()}


def code_to_mnemonic(code: int) -> str:
    """
    Brief: Return the mnemonic for a supported numeric record type.

    Inputs:
      - code: numeric DNS RR type (e.g. 1 for A).

    Outputs:
      - str: mnemonic such as 'A' or 'AAAA'.

    Raises UnsupportedType for codes outside SUPPORTED_TYPES.

    Example:
        >>> code_to_mnemonic(28)
        'AAAA'
    """
    try:
        return SUPPORTED_TYPES[int(code)]
    except (KeyError, TypeError, ValueError):
        raise UnsupportedType(code) from None


def mnemonic_to_code(mnemonic: str) -> int:
    """Inverse of code_to_mnemonic; case-insensitive."""
    try:
        return _BY_MNEMONIC[str(mnemonic).strip().upper()]
    except KeyError:
        raise UnsupportedType(mnemonic) from None
