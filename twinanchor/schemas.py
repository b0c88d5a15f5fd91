# FILE: twinanchor/schemas.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Requests
# =============================================================================


class AnchorRequest(BaseModel):
    """Manual anchoring of one or more records of a single kind."""

    model_config = ConfigDict(extra="forbid")

    entity_type: str = Field(..., description="Entity kind, e.g. 'expense' or 'payroll_entry'")
    entity_ids: List[str] = Field(..., min_length=1, max_length=100)

    @field_validator("entity_ids")
    @classmethod
    def _non_empty_ids(cls, v: List[str]) -> List[str]:
        ids = [s.strip() for s in v]
        if any(not s for s in ids):
            raise ValueError("entity ids must be non-empty")
        return ids


class VerifyRequest(BaseModel):
    """
    Explorer verification. Either `tx_hash` or both `entity_type` and
    `entity_id` must be given; when all three are present the entity
    identity overrides the one decoded from the transaction.
    """

    model_config = ConfigDict(extra="forbid")

    tx_hash: Optional[str] = Field(None, description="Public-ledger transaction hash")
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    def has_reference(self) -> bool:
        return bool(self.tx_hash) or bool(self.entity_type and self.entity_id)


# =============================================================================
# Responses
# =============================================================================


class QueueStatusView(BaseModel):
    queue_length: int
    processing: bool
    total_processed: int
    total_failed: int


class AnchorItemView(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entity_id: str
    status: str = Field(..., description="'anchored', 'already_anchored' or 'not_found'")
    private_ledger_hash: Optional[str] = None
    private_ledger_txid: Optional[str] = None
    public_ledger_txhash: Optional[str] = None
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None
    signer_address: Optional[str] = None


class AnchorResponse(BaseModel):
    entity_type: str
    results: List[AnchorItemView]


class VerificationView(BaseModel):
    verified: bool
    on_chain_hash: Optional[str] = None
    recomputed_hash: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    recovered_from_blockchain: bool = False
    error: Optional[str] = None
    public_ledger: Optional[Dict[str, Any]] = None
    private_ledger: Optional[Dict[str, Any]] = None
    ledger_drift: bool = False


class AnchorJobView(BaseModel):
    id: str
    org_id: str
    entity_type: str
    entity_id: str
    status: str
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str


class LookupMatch(BaseModel):
    entity_type: str
    entity_id: str
    org_id: Optional[str] = None
    private_ledger_hash: Optional[str] = None
    private_ledger_txid: Optional[str] = None
    public_ledger_txhash: Optional[str] = None


class RecoveredVersion(BaseModel):
    version: int
    hash: Optional[str] = None
    published_at: Optional[str] = None
    txid: str
    blocktime: Optional[int] = None
    confirmations: int = 0
    metadata: Optional[Dict[str, Any]] = None


class RecoverResponse(BaseModel):
    entity_type: str
    entity_id: str
    versions: List[RecoveredVersion]


__all__ = [
    "AnchorRequest",
    "VerifyRequest",
    "QueueStatusView",
    "AnchorItemView",
    "AnchorResponse",
    "VerificationView",
    "AnchorJobView",
    "LookupMatch",
    "RecoveredVersion",
    "RecoverResponse",
]
