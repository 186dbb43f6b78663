"""Decide whether a failed submission means "this signer is out of funds".

A structured code always wins. Only when the failure carries no code at all
do we fall back to matching phrases in its message, which is best effort:
the phrase list reflects what XRPL and EVM-style clients say today and may
need extending for other ledger backends.
"""

from __future__ import annotations

import metarelayer.constants as C
from metarelayer.errors import InsufficientFunds


def error_code(err: BaseException) -> str | None:
    # LedgerError.code, or .error as set by xrpl's XRPLRequestFailureException
    for attr in ("code", "error"):
        value = getattr(err, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


def error_reason(err: BaseException) -> str:
    for attr in ("reason", "error_message"):
        value = getattr(err, attr, None)
        if isinstance(value, str) and value:
            return value
    return str(err) or type(err).__name__


def is_insufficient_funds(err: BaseException) -> bool:
    if isinstance(err, InsufficientFunds):
        return True
    code = error_code(err)
    if code is not None:
        return code in C.INSUFFICIENT_FUNDS_CODES
    message = error_reason(err).lower()
    return any(phrase in message for phrase in C.INSUFFICIENT_FUNDS_PHRASES)
