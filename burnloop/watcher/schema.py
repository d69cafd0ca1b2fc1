"""Watcher data models — vault snapshots, fee events, attribution outcomes."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class VaultKind(str, Enum):
    PRIMARY = "primary"      # bonding-curve creator vault (native SOL)
    SECONDARY = "secondary"  # AMM creator vault (WSOL token account)


class VaultSnapshot(BaseModel):
    """Last known balance of a watched account."""

    account_id: str
    kind: VaultKind = VaultKind.PRIMARY
    last_balance: int = 0
    last_slot: int = 0


class FeeEvent(BaseModel):
    """A positive balance delta on a watched vault."""

    model_config = ConfigDict(frozen=True)

    vault_kind: VaultKind
    account_id: str
    amount: int
    slot: int
    observed_at: float


class AttributionStatus(str, Enum):
    ATTRIBUTED = "attributed"
    ORPHANED = "orphaned"


class AttributionOutcome(BaseModel):
    """Result of resolving one FeeEvent, delivered to listeners."""

    event: FeeEvent
    status: AttributionStatus
    asset_id: str = ""
    display_name: str = ""
    signature: str = ""
    reason: str = ""
