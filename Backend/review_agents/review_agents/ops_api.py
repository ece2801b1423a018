# review_agents/ops_api.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config as _config  # loads .env
from .case_lifecycle import CaseLifecycle, compute_sla_status
from .config import AgentSettings, get_settings
from .db import count_notifications_by_status, get_conn, ping, safe_close
from .errors import CaseNotFound, StoreUnavailable
from .notifications import STATUS_FAILED, STATUS_QUEUED, STATUS_RETRY, STATUS_SENDING
from .utils import json_safe, now_dt

log = logging.getLogger(__name__)


# ----------------------------
# API contracts
# ----------------------------
class HealthOut(BaseModel):
    ok: bool
    store: str
    notifications: Dict[str, int] = {}
    sla_role: str
    sla_dry_run: bool
    notification_dry_run: bool
    error: Optional[str] = None


class CaseOut(BaseModel):
    case: Dict[str, Any]
    sla: Dict[str, Any]
    open_assignment: Optional[Dict[str, Any]] = None


class CaseEventsOut(BaseModel):
    case_id: int
    events: List[Dict[str, Any]]


def create_app(
    conn_factory: Callable[[], Any] = get_conn,
    settings: Optional[AgentSettings] = None,
    clock: Callable[[], Any] = now_dt,
    close_connections: bool = True,
) -> FastAPI:
    """Read-only operations surface over the case store and notification queue."""
    settings = settings or get_settings()
    lifecycle = CaseLifecycle(settings=settings, clock=clock)
    app = FastAPI(title="Review Agents Ops", version="1.0")

    def get_db() -> Iterator[Any]:
        try:
            conn = conn_factory()
        except StoreUnavailable as e:
            log.error("ops api: store unavailable: %s", e)
            raise HTTPException(status_code=503, detail="store unavailable")
        try:
            yield conn
        finally:
            if close_connections:
                safe_close(conn)

    @app.get("/health", response_model=HealthOut)
    def health():
        base = {
            "sla_role": settings.sla_role,
            "sla_dry_run": settings.sla_dry_run,
            "notification_dry_run": settings.notification_dry_run,
        }
        conn = None
        try:
            conn = conn_factory()
            ping(conn)
            counts = count_notifications_by_status(conn)
        except StoreUnavailable as e:
            log.error("ops api health: store unavailable: %s", e)
            body = HealthOut(ok=False, store="down", error=str(e), **base)
            return JSONResponse(status_code=503, content=body.model_dump())
        finally:
            if close_connections:
                safe_close(conn)

        queue = {s: int(counts.get(s, 0)) for s in (STATUS_QUEUED, STATUS_RETRY, STATUS_SENDING, STATUS_FAILED)}
        return HealthOut(ok=True, store="up", notifications=queue, **base)

    @app.get("/cases/{case_id}", response_model=CaseOut)
    def get_case(case_id: int, conn=Depends(get_db)):
        try:
            case = lifecycle.get_case(conn, case_id)
        except CaseNotFound:
            raise HTTPException(status_code=404, detail=f"case {case_id} not found")
        assignment = lifecycle.get_open_assignment(conn, case_id)
        return CaseOut(
            case=json_safe(case),
            sla=compute_sla_status(case, clock()),
            open_assignment=json_safe(assignment) if assignment else None,
        )

    @app.get("/cases/{case_id}/events", response_model=CaseEventsOut)
    def get_case_events(case_id: int, conn=Depends(get_db)):
        try:
            events = lifecycle.list_case_events(conn, case_id)
        except CaseNotFound:
            raise HTTPException(status_code=404, detail=f"case {case_id} not found")
        return CaseEventsOut(case_id=case_id, events=json_safe(events))

    return app
