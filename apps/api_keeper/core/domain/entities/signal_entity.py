# apps/api_keeper/core/domain/entities/signal_entity.py

from typing import Optional

from pydantic import BaseModel, Field


class SignalEntity(BaseModel):
    """
    A pool-scoped signal emitted by the hook contract.

    Only the latest signal per pool is authoritative for rule evaluation;
    older ones are kept for audit only.
    """

    pool_id: str
    signal_type: int
    magnitude: int = Field(..., ge=0)   # basis points
    timestamp: int

    # provenance, when the signal came from a chain log
    block_number: Optional[int] = None
    log_index: Optional[int] = None
    tx_hash: Optional[str] = None

    def is_newer_than(self, other: Optional["SignalEntity"]) -> bool:
        if other is None:
            return True
        return (self.timestamp, self.block_number or 0, self.log_index or 0) > (
            other.timestamp, other.block_number or 0, other.log_index or 0,
        )
