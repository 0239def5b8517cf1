"""
Error taxonomy for the keeper.

Every error exposes `public_message`: a short, human-readable cause that is
safe to store in execution records and show on a dashboard. Raw exception
text stays in the logs.
"""

import asyncio
from typing import Any, Dict, Optional


class KeeperError(Exception):
    public_message = "Execution failed"

    def __init__(self, msg: Optional[str] = None, *, public_message: Optional[str] = None):
        super().__init__(msg or public_message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


# ---------- gate ----------

class GateRejectedError(KeeperError):
    """
    Raised by the ledger substrate when `execute` re-validates the gate at
    commit time and the rule is not ready. Not a failure of the system.
    """
    public_message = "Rule not ready"

    def __init__(self, reason: str):
        super().__init__(reason, public_message=f"Rule not ready: {reason}")
        self.reason = reason


class AgentNotFoundError(KeeperError):
    public_message = "Agent not found"

    def __init__(self, agent_id: int):
        super().__init__(f"agent {agent_id} not found")
        self.agent_id = agent_id


# ---------- transient provider failures (retryable) ----------

class TransientProviderError(KeeperError):
    public_message = "Settlement provider unavailable"


class QuoteUnavailableError(TransientProviderError):
    public_message = "Could not obtain a quote"


class StaleQuoteError(TransientProviderError):
    """Re-quote deviated beyond tolerance. Not retried within the attempt."""
    public_message = "Quote no longer valid"


class SessionError(TransientProviderError):
    """Off-chain session not open, submit rejected, or timed out."""
    public_message = "Off-chain session failed"


class OnChainSubmissionError(TransientProviderError):
    """Simulation revert, broadcast failure or confirmation timeout."""
    public_message = "On-chain submission failed"


class TransactionRevertedError(OnChainSubmissionError):
    """
    Raised when the tx was actually sent on-chain, mined, and status == 0.
    Gas was paid, the chain executed and reverted.
    """
    public_message = "On-chain transaction reverted"

    def __init__(self, tx_hash: str, receipt: Dict[str, Any], msg: str):
        super().__init__(msg)
        self.tx_hash = tx_hash
        self.receipt = receipt


class TransactionPendingError(OnChainSubmissionError):
    """
    The tx was broadcast but no receipt arrived in time. It may still mine,
    so it is never re-broadcast; the AgentExecuted log settles the question.
    """
    public_message = "On-chain confirmation pending"

    def __init__(self, tx_hash: Optional[str], msg: str):
        super().__init__(msg)
        self.tx_hash = tx_hash


# ---------- invariant violations (never retried) ----------

class InvariantViolationError(KeeperError):
    public_message = "Ledger invariant violated"


class InsufficientBalanceError(InvariantViolationError):
    public_message = "Insufficient agent balance"

    def __init__(self, agent_id: int, token: str, requested: int, available: int):
        super().__init__(
            f"agent {agent_id} token {token}: requested {requested} > available {available}"
        )
        self.agent_id = agent_id
        self.token = token
        self.requested = requested
        self.available = available


class SolvencyViolationError(InvariantViolationError):
    public_message = "Tracked balances would exceed custodied funds"

    def __init__(self, token: str, tracked: int, custodied: int):
        super().__init__(f"token {token}: tracked {tracked} > custodied {custodied}")
        self.token = token
        self.tracked = tracked
        self.custodied = custodied


class InvalidAmountError(InvariantViolationError):
    public_message = "Amount must be positive"


# ---------- configuration / auth ----------

class ConfigurationError(KeeperError):
    public_message = "Keeper misconfigured"


class UnauthorizedError(KeeperError):
    public_message = "Caller not authorized"


# ---------- process-fatal ----------

class ChainUnavailableError(KeeperError):
    public_message = "Chain reader unreachable"


def public_message_for(exc: BaseException) -> str:
    """
    Map any exception to a dashboard-safe message.
    """
    if isinstance(exc, KeeperError):
        return exc.public_message
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "Operation timed out"
    return "Unexpected execution error"
