"""
Persisted swap-state schema.

One JSON object per swap id, camelCase on disk:

    { swapId, status, depositor, counterparty,
      lockAsset: { amount, address, scriptHex, secretHashHex, lockTime },
      counterAsset: { tokenRef, amount, partyAddress },
      secretHex, createdAt, expiresAt, completedAt, refundedAt,
      depositTxRef, counterTxRef, ... }
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core import SwapStatus, TERMINAL_STATUSES


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              validate_assignment=True)


class LockAsset(_Record):
    amount: int = Field(..., gt=0)          # sats
    address: str
    script_hex: str
    secret_hash_hex: str = Field(..., min_length=64, max_length=64)
    lock_time: int                          # HTLC CLTV value


class CounterAsset(_Record):
    token_ref: str
    amount: int = Field(..., gt=0)          # base units
    party_address: str                      # beneficiary on the account chain


class SwapRecord(_Record):
    swap_id: str
    status: SwapStatus = SwapStatus.INITIATED
    depositor: str
    counterparty: str
    lock_asset: LockAsset
    counter_asset: CounterAsset

    secret_hex: Optional[str] = None        # only after reveal
    created_at: int
    expires_at: int
    updated_at: Optional[int] = None
    completed_at: Optional[int] = None
    refunded_at: Optional[int] = None

    deposit_tx_ref: Optional[str] = None
    counter_tx_ref: Optional[str] = None
    register_tx_ref: Optional[str] = None
    claim_tx_ref: Optional[str] = None
    refund_tx_ref: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "SwapRecord":
        return cls.model_validate_json(raw)
