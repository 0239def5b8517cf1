from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ChainEvent(BaseModel):
    """
    A decoded contract log, as handed to the ingestion use case.
    `name` is the event name (SignalEmitted, AgentCreated, ...).
    """
    name: str
    block_number: int
    log_index: int
    tx_hash: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)

    def sort_key(self):
        return (self.block_number, self.log_index)
