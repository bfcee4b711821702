# server/app.py
from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..dispatch import Dispatcher
from ..errors import RunNotFound, SchemaError
from ..model import Event, EventKind, RunStatus, WorkflowDefinition
from ..parser import parse_document

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: EventKind
    ref: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)

class DispatchResponse(BaseModel):
    run_ids: list[str]
    errors: list[str]

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool

class WorkflowSummary(BaseModel):
    name: str
    source: Optional[str]
    triggers: list[str]
    jobs: list[str]


def _summary(wf: WorkflowDefinition) -> WorkflowSummary:
    return WorkflowSummary(
        name=wf.name,
        source=wf.source,
        triggers=[t.kind.value for t in wf.triggers],
        jobs=list(wf.jobs),
    )


def create_app(dispatcher: Dispatcher) -> FastAPI:
    app = FastAPI(title="flowci")
    app.state.dispatcher = dispatcher
    coordinator = dispatcher.coordinator

    # -------------------- Endpoints --------------------

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True, "active_runs": len(coordinator.active_runs())}

    @app.post("/events", response_model=DispatchResponse)
    def submit_event(req: EventRequest):
        event = Event(kind=req.kind, ref=req.ref, payload=req.payload)
        result = dispatcher.dispatch(event)
        if result.errors and not result.run_ids:
            raise HTTPException(status_code=422, detail=result.errors)
        return DispatchResponse(run_ids=result.run_ids, errors=result.errors)

    @app.get("/runs")
    def list_runs(workflow: Optional[str] = None, status: Optional[RunStatus] = None, limit: int = 50):
        runs = coordinator.list_runs(workflow=workflow, status=status, limit=limit)
        return [r.to_dict() for r in runs]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        try:
            return coordinator.get_run(run_id).to_dict()
        except RunNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        try:
            cancelled = coordinator.cancel(run_id)
        except RunNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    @app.get("/workflows", response_model=list[WorkflowSummary])
    def list_workflows():
        return [_summary(wf) for wf in dispatcher.workflows]

    @app.post("/workflows/validate", response_model=WorkflowSummary)
    def validate_workflow(document: dict[str, Any]):
        try:
            return _summary(parse_document(document))
        except SchemaError as e:
            raise HTTPException(status_code=422, detail={"path": e.path, "message": e.message})

    return app
