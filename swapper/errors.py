"""
Typed errors for swapper.

Every failure carries a machine-readable ``kind`` and a coarse ``category``
so the calling layer can decide between "wait and retry", "fix input" and
"give up" without parsing messages.
"""

from typing import Any, Dict, Optional


# Categories
VALIDATION = "validation"
IDENTITY = "identity"
NOT_FOUND = "not_found"
STATE = "state"
CHAIN = "chain"
PROOF = "proof"
EXPIRY = "expiry"


class SwapError(Exception):
    """Base class for all swapper errors."""

    kind = "swap_error"
    category = STATE
    retryable = False

    def __init__(self, message: str = "", swap_id: Optional[str] = None, **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.swap_id = swap_id
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "category": self.category,
            "retryable": self.retryable,
            "message": self.message,
            "swap_id": self.swap_id,
            "details": self.details,
        }


# =============================================================================
# Input validation
# =============================================================================

class InvalidParameters(SwapError):
    kind = "invalid_parameters"
    category = VALIDATION


class DepositMismatch(SwapError):
    """Deposit transaction does not fund the HTLC with the expected amount."""
    kind = "deposit_mismatch"
    category = VALIDATION


# =============================================================================
# Duplicate / identity
# =============================================================================

class DuplicateSwap(SwapError):
    kind = "duplicate_swap"
    category = IDENTITY


class SecretAlreadyUsed(SwapError):
    kind = "secret_already_used"
    category = IDENTITY


class DepositAlreadyProcessed(SwapError):
    kind = "deposit_already_processed"
    category = IDENTITY


class Unauthorized(SwapError):
    kind = "unauthorized"
    category = IDENTITY


# =============================================================================
# Lookup / state
# =============================================================================

class SwapNotFound(SwapError):
    """No persisted state for the swap id on this coordinator."""
    kind = "swap_not_found"
    category = NOT_FOUND


class UnknownSwap(SwapError):
    """Registry has no order for the swap id."""
    kind = "unknown_swap"
    category = NOT_FOUND


class NotPending(SwapError):
    kind = "not_pending"
    category = STATE


class ClaimOutstanding(SwapError):
    """The HTLC was claimed (secret public) but the order is not completed yet."""
    kind = "claim_outstanding"
    category = STATE


# =============================================================================
# Chain communication
# =============================================================================

class ChainError(SwapError):
    """RPC timeout, HTTP failure, rejected broadcast. Safe to retry later."""
    kind = "chain_error"
    category = CHAIN
    retryable = True


# =============================================================================
# Proof / consensus
# =============================================================================

class InvalidSecret(SwapError):
    kind = "invalid_secret"
    category = PROOF


class InvalidProof(SwapError):
    kind = "invalid_proof"
    category = PROOF


class InsufficientConfirmations(SwapError):
    kind = "insufficient_confirmations"
    category = PROOF
    retryable = True


class SecretNotRevealed(SwapError):
    kind = "secret_not_revealed"
    category = PROOF
    retryable = True


class InsufficientFunds(SwapError):
    kind = "insufficient_funds"
    category = PROOF


# =============================================================================
# Expiry
# =============================================================================

class Expired(SwapError):
    kind = "expired"
    category = EXPIRY


class LockNotExpired(SwapError):
    kind = "lock_not_expired"
    category = EXPIRY
