#!/usr/bin/env python3
"""
Error taxonomy for the auction keeper.
"""

from typing import Iterable, Optional


class KeeperError(Exception):
    """Base class for all keeper errors"""


class ConfigurationError(KeeperError):
    """Required configuration is missing or invalid. Fatal at startup."""


class DuplicateKeyError(KeeperError):
    """Raised by a store backend when a unique key already exists"""

    def __init__(self, collection: str, key: str):
        super().__init__(f"Duplicate key in {collection}: {key}")
        self.collection = collection
        self.key = key


class UnknownChainError(KeeperError, LookupError):
    """A chain identifier could not be resolved against the registry"""

    def __init__(self, identifier, available: Iterable[str] = ()):
        self.identifier = identifier
        self.available = sorted(available)
        super().__init__(
            f"Unknown chain {identifier!r} (available: {', '.join(self.available) or 'none'})"
        )


class UnknownTokenError(KeeperError, LookupError):
    """A token address has no symbol mapping on the given chain"""

    def __init__(self, token: str, chain_id: int, available: Iterable[str] = ()):
        self.token = token
        self.chain_id = chain_id
        self.available = sorted(available)
        super().__init__(
            f"Token {token} not found on chain {chain_id} (known: {', '.join(self.available) or 'none'})"
        )


class ChainError(KeeperError):
    """RPC read or submission failure. Transient."""


class TransactionReverted(ChainError):
    """A keeper transaction was rejected by the contract"""

    # Chain clock behind the local clock at the deadline
    PREMATURE_MARKERS = (
        "not ended",
        "not yet ended",
        "auction still active",
        "deadline not reached",
        "too early",
    )
    # Contract already moved past the step being retried
    ALREADY_DONE_MARKERS = (
        "already",
        "nothing to refund",
        "no active bid",
        "bid not found",
    )

    def __init__(self, action: str, reason: Optional[str] = None, tx_hash: Optional[str] = None):
        self.action = action
        self.reason = reason or "execution reverted"
        self.tx_hash = tx_hash
        super().__init__(f"{action} reverted: {self.reason}")

    def _matches(self, markers) -> bool:
        reason = self.reason.lower()
        return any(marker in reason for marker in markers)

    @property
    def is_premature(self) -> bool:
        return self._matches(self.PREMATURE_MARKERS)

    @property
    def is_already_done(self) -> bool:
        return self._matches(self.ALREADY_DONE_MARKERS)


class SettlementError(KeeperError):
    """A required settlement step did not complete; retried next tick"""

    def __init__(self, intent_id: str, step: str, cause: Optional[BaseException] = None):
        self.intent_id = intent_id
        self.step = step
        self.cause = cause
        message = f"Settlement step '{step}' failed for {intent_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
