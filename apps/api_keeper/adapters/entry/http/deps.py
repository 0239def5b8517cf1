import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request


def get_supervisor(request: Request):
    """
    Resolve the running KeeperSupervisor from FastAPI app state.
    """
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None or supervisor.loop is None:
        raise RuntimeError("Keeper is not initialized in app.state.supervisor")
    return supervisor


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    """
    Admin routes need X-Admin-Token == ADMIN_API_TOKEN. An empty configured
    token disables them.
    """
    expected = get_supervisor(request).settings.ADMIN_API_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Caller not authorized")
