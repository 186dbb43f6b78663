"""Exception types raised by the relayer.

Everything derives from RelayerError so the HTTP layer can render any of
them with the original reason and structured code intact.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from metarelayer.constants import RelayState

if TYPE_CHECKING:
    from metarelayer.relay import RelayAttempt


class RelayerError(Exception):
    code: str | None = None

    @property
    def reason(self) -> str:
        return str(self)


class ConfigurationError(RelayerError):
    """Fatal at startup: empty pool, missing or malformed settings."""


class LedgerError(RelayerError):
    """A ledger call failed. `code` is the engine result / RPC error when known."""

    def __init__(self, reason: str, code: str | None = None) -> None:
        super().__init__(reason)
        self.code = code


class InsufficientFunds(LedgerError):
    """The signer cannot cover value plus fee."""


class AllSignersFailed(RelayerError):
    outcome = RelayState.EXHAUSTED

    def __init__(self, attempts: list[RelayAttempt]) -> None:
        super().__init__(
            f"All {len(attempts)} signers failed (likely insufficient funds on every configured signer)"
        )
        self.attempts = attempts


class SubmissionError(RelayerError):
    """Terminal non-funds failure of a relay call. Chained to the underlying exception."""

    outcome = RelayState.FAILED

    def __init__(
        self,
        reason: str,
        *,
        code: str | None = None,
        signer_index: int | None = None,
        attempts: list[RelayAttempt] | None = None,
    ) -> None:
        super().__init__(reason)
        self.code = code
        self.signer_index = signer_index
        self.attempts = attempts or []


class ConfirmationTimeout(SubmissionError):
    pass


class ProofUnavailable(RelayerError):
    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(reason)
        self.status = status


class RebalanceShortfall(RelayerError):
    def __init__(self, address: str, missing: int, treasury_balance: int) -> None:
        super().__init__(
            f"treasury exhausted: {address} needs {missing} drops, treasury holds {treasury_balance}"
        )
        self.address = address
        self.missing = missing
        self.treasury_balance = treasury_balance


class RebalanceInProgress(RelayerError):
    def __init__(self) -> None:
        super().__init__("A rebalancing run is already in progress")
