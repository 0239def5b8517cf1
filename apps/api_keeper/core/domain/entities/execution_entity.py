# apps/api_keeper/core/domain/entities/execution_entity.py

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..enums.agent_enums import ExecutionOutcome, ExecutionPath


class Decision(BaseModel):
    """
    Output of the rule engine for one (agent, rule) at a given instant.
    """
    should_execute: bool
    reason: str


class RouteHop(BaseModel):
    protocol: str
    pool: str
    token_in: str
    token_out: str
    fee: int


class Quote(BaseModel):
    """
    A priced swap offer from the quote/settle provider. Amounts are raw
    token units (wei-like integers).
    """
    token_in: str
    token_out: str
    amount_in: int = Field(..., gt=0)
    amount_out: int = Field(..., ge=0)
    slippage_bps: int = 50
    route: List[RouteHop] = Field(default_factory=list)
    route_data: str = "0x"
    price_impact_bps: int = 0
    gas_estimate: int = 0
    quoted_at: int = 0


class OffChainSession(BaseModel):
    """
    An application session opened with the settlement counter-party.
    `allocations` mirror what the counter-party holds for each participant.
    """
    session_id: str
    participants: List[str]
    allocations: List[Dict[str, Any]]
    version: int = 1
    status: str = "open"


class SettlementReceipt(BaseModel):
    """
    Outcome of one settlement call on either path.
    """
    success: bool
    reference: Optional[str] = None   # session execution id or tx hash
    amount_out: Optional[int] = None  # realized output when the path reports it
    gas_used: Optional[int] = None


class ExecutionAttemptEntity(BaseModel):
    """
    One terminal execution attempt as stored by the execution recorder.
    Retries are internal to a single attempt and never recorded separately.
    """
    id: Optional[str] = None
    agent_id: int
    rule_index: int
    timestamp: int
    path: ExecutionPath
    outcome: ExecutionOutcome
    amount_in: int = 0
    amount_out: int = 0
    external_reference: Optional[str] = None
    error_detail: Optional[str] = None   # human readable, never raw exception text
    rule_type: Optional[int] = None
    threshold: Optional[int] = None
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == ExecutionOutcome.SUCCESS


class ExecutionResult(BaseModel):
    """
    What the dual-path executor hands back to the evaluation loop.
    """
    agent_id: int
    rule_index: int
    success: bool
    path: ExecutionPath
    amount_in: int = 0
    amount_out: Optional[int] = None
    reference: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0   # on-chain submissions tried

    def to_attempt(
        self,
        timestamp: int,
        *,
        rule_type: Optional[int] = None,
        threshold: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> ExecutionAttemptEntity:
        return ExecutionAttemptEntity(
            agent_id=self.agent_id,
            rule_index=self.rule_index,
            timestamp=timestamp,
            path=self.path,
            outcome=ExecutionOutcome.SUCCESS if self.success else ExecutionOutcome.FAILED,
            amount_in=self.amount_in,
            amount_out=self.amount_out or 0,
            external_reference=self.reference,
            error_detail=self.error,
            rule_type=rule_type,
            threshold=threshold,
            reason=reason,
        )


class PendingSettlement(BaseModel):
    """
    An on-chain settlement that was broadcast but never confirmed. Held
    until its AgentExecuted log shows up.
    """
    agent_id: int
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
