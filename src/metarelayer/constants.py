from typing import Final
from enum import StrEnum


class RelayState(StrEnum):
    TRYING    = "TRYING"
    DONE      = "DONE"
    FAILED    = "FAILED"
    EXHAUSTED = "EXHAUSTED"


class TopUpAction(StrEnum):
    NONE      = "none"
    TOPPED_UP = "topped-up"
    FAILED    = "failed"


class EntryPoint(StrEnum):
    OPEN_MARKET  = "executeOpenMarket"
    CLOSE_MARKET = "executeCloseMarket"
    OPEN_LIMIT   = "executeOpenLimit"
    CANCEL_LIMIT = "executeCancelLimit"
    SET_SL       = "executeSetSL"
    SET_TP       = "executeSetTP"
    UPDATE_STOPS = "executeUpdateStops"


# Engine results the node accepts for (eventual) inclusion.
ACCEPTED_ENGINE_RESULTS: Final = frozenset({"tesSUCCESS", "terQUEUED"})
SUCCESS_RESULT: Final = "tesSUCCESS"
EXPIRED_RESULT: Final = "tefMAX_LEDGER"
ACCOUNT_NOT_FOUND: Final = "actNotFound"

# Structured codes meaning "this signer cannot pay value + fee".
INSUFFICIENT_FUNDS_CODES: Final = frozenset(
    {
        "tecUNFUNDED_PAYMENT",
        "tecUNFUNDED",
        "tecINSUFF_FEE",
        "tecINSUFFICIENT_RESERVE",
        "terINSUF_FEE_B",
        "terNO_ACCOUNT",
        ACCOUNT_NOT_FOUND,
        "INSUFFICIENT_FUNDS",
    }
)

# Funds results the node holds and retries (ter*): the transaction stays live until
# its LastLedgerSequence passes, so the signer is only out of the running after that.
HELD_FUNDS_RESULTS: Final = frozenset(c for c in INSUFFICIENT_FUNDS_CODES if c.startswith("ter"))

# Last-resort message matching when a failure carries no code. Best effort only:
# other ledger backends word this differently and may need entries added.
INSUFFICIENT_FUNDS_PHRASES: Final = (
    "insufficient funds",
    "insufficient balance for transaction",
    "insufficient xrp balance",
)

DEFAULT_CALL_VALUE_DROPS = 1
DEFAULT_THRESHOLD_XRP = "50"
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20.0
POLL_INTERVAL = 0.5
PROOF_TIMEOUT = 10.0
PROBE_RETRIES = 30
PROBE_DELAY = 2.0
DEFAULT_PORT = 8232

__all__ = [
    "ACCEPTED_ENGINE_RESULTS",
    "ACCOUNT_NOT_FOUND",
    "DEFAULT_CALL_VALUE_DROPS",
    "DEFAULT_PORT",
    "DEFAULT_THRESHOLD_XRP",
    "EXPIRED_RESULT",
    "HELD_FUNDS_RESULTS",
    "INSUFFICIENT_FUNDS_CODES",
    "INSUFFICIENT_FUNDS_PHRASES",
    "POLL_INTERVAL",
    "PROBE_DELAY",
    "PROBE_RETRIES",
    "PROOF_TIMEOUT",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "SUCCESS_RESULT",

    ######
    "EntryPoint",
    "RelayState",
    "TopUpAction",
]
