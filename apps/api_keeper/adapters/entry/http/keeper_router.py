import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ....core.domain.entities.execution_entity import ExecutionAttemptEntity
from ....core.domain.exceptions import AgentNotFoundError
from .deps import get_supervisor

router = APIRouter(prefix="/api", tags=["keeper"])


class AgentStatusOutDTO(BaseModel):
    agent_id: int
    last_evaluation: Optional[int] = None
    total_executions: int = 0
    is_active: bool = False


class ExecutionsOutDTO(BaseModel):
    executions: List[ExecutionAttemptEntity]
    total: int


@router.get("/health")
async def health(supervisor=Depends(get_supervisor)):
    return {
        "status": "ok",
        "uptime_sec": int(time.time() - (supervisor.started_at or time.time())),
        "keeper_address": supervisor.keeper_address,
        "off_chain_available": supervisor.off_chain_available,
        "last_pass_at": supervisor.evaluate_uc.last_pass_at,
    }


@router.get("/executions", response_model=ExecutionsOutDTO)
async def list_executions(
    agent_id: Optional[int] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=1000),
    supervisor=Depends(get_supervisor),
):
    """
    Most recent first. Error fields carry public messages only.
    """
    items = await supervisor.recorder.query(agent_id=agent_id, limit=limit)
    total = await supervisor.recorder.count(agent_id=agent_id)
    return {"executions": items, "total": total}


@router.get("/agents/status", response_model=List[AgentStatusOutDTO])
async def agents_status(supervisor=Depends(get_supervisor)):
    return [
        {"agent_id": agent_id, **status}
        for agent_id, status in sorted(supervisor.evaluate_uc.agent_status.items())
    ]


@router.get("/stats")
async def stats(supervisor=Depends(get_supervisor)):
    out: Dict = await supervisor.recorder.stats()
    out["uptime_sec"] = int(time.time() - (supervisor.started_at or time.time()))
    out["passes"] = supervisor.loop.passes
    return out


@router.get("/config")
async def config(supervisor=Depends(get_supervisor)):
    return {**supervisor.settings.public_view(), "keeper_address": supervisor.keeper_address}


@router.get("/agents/{agent_id}/balances")
async def agent_balances(agent_id: int, supervisor=Depends(get_supervisor)):
    try:
        await supervisor.agents.get_agent(agent_id)
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.public_message)
    balances = await supervisor.ledger.balances(agent_id)
    # uint256 values travel as strings
    return {"agent_id": agent_id, "balances": {t: str(v) for t, v in balances.items()}}
