import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from ....core.domain.entities.signal_entity import SignalEntity
from ....core.domain.enums.agent_enums import TriggerSource
from ....core.domain.exceptions import AgentNotFoundError, InvariantViolationError
from .deps import get_supervisor, require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class LedgerMovementDTO(BaseModel):
    token: str = Field(..., examples=["0xfff9976782d46cc05630d1f6ebab18b2324d6b14"])
    amount: int

    @field_validator("token")
    @classmethod
    def lower_token(cls, v: str) -> str:
        return v.lower()


class SignalPushDTO(BaseModel):
    pool_id: str = Field(..., pattern=r"^0x[0-9a-fA-F]{64}$")
    signal_type: int = Field(..., ge=0, le=255)
    magnitude: int = Field(..., ge=0)
    timestamp: Optional[int] = None

    @field_validator("pool_id")
    @classmethod
    def lower_pool(cls, v: str) -> str:
        return v.lower()


async def _ensure_agent(supervisor, agent_id: int) -> None:
    try:
        await supervisor.agents.get_agent(agent_id)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.public_message)


@router.post("/agents/{agent_id}/deposit")
async def deposit(agent_id: int, dto: LedgerMovementDTO, supervisor=Depends(get_supervisor)):
    await _ensure_agent(supervisor, agent_id)
    try:
        balances = await supervisor.ledger.apply_deposit(agent_id, dto.token, dto.amount)
    except InvariantViolationError as exc:
        raise HTTPException(status_code=409, detail=exc.public_message)
    return {"agent_id": agent_id, "balances": {t: str(v) for t, v in balances.items()}}


@router.post("/agents/{agent_id}/withdraw")
async def withdraw(agent_id: int, dto: LedgerMovementDTO, supervisor=Depends(get_supervisor)):
    await _ensure_agent(supervisor, agent_id)
    try:
        balances = await supervisor.ledger.apply_withdraw(agent_id, dto.token, dto.amount)
    except InvariantViolationError as exc:
        raise HTTPException(status_code=409, detail=exc.public_message)
    return {"agent_id": agent_id, "balances": {t: str(v) for t, v in balances.items()}}


@router.post("/signals")
async def push_signal(dto: SignalPushDTO, supervisor=Depends(get_supervisor)):
    """
    Push a pool signal. A signal that becomes the pool's latest wakes the loop.
    """
    signal = SignalEntity(
        pool_id=dto.pool_id,
        signal_type=dto.signal_type,
        magnitude=dto.magnitude,
        timestamp=dto.timestamp or int(time.time()),
    )
    is_latest = await supervisor.push_signal(signal)
    return {"accepted": True, "latest": is_latest}


@router.post("/evaluate")
async def trigger_evaluation(supervisor=Depends(get_supervisor)):
    queued = supervisor.loop.notify(TriggerSource.MANUAL)
    return {"queued": queued}
