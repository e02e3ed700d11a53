"""Containerised admin console dashboard for Quest Ops."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel, Field

from quest_ops.backend import BackendError, MutationError
from quest_ops.models import InstanceStatus, SignupStatus, SquadStatus, to_jsonable
from quest_ops.service import ConsoleService

APP_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = APP_DIR / "templates"

logging.basicConfig(level=os.environ.get("QUEST_OPS_LOG_LEVEL", "INFO"))

service = ConsoleService()

jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

app = FastAPI(title="Quest Ops Admin Console")

# Console-raised mutation failures; anything else came from the backend.
MUTATION_STATUS = {"invalid_transition": 409, "not_found": 404, "reason_required": 400}


class InstanceTransitionRequest(BaseModel):
    status: InstanceStatus
    reason: Optional[str] = None
    notify_users: bool = False
    admin_id: Optional[str] = None


class BulkTransitionRequest(BaseModel):
    instance_ids: List[str] = Field(min_length=1)
    status: InstanceStatus
    reason: Optional[str] = None
    admin_id: Optional[str] = None


class SquadStatusRequest(BaseModel):
    status: SquadStatus
    notes: Optional[str] = None
    admin_id: Optional[str] = None


class SignupStatusRequest(BaseModel):
    status: SignupStatus
    reason: str = Field(min_length=1)
    admin_id: Optional[str] = None


class XpRerunRequest(BaseModel):
    reason: str = Field(min_length=1)


class FlagUpdateRequest(BaseModel):
    is_enabled: Optional[bool] = None
    rollout_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    admin_id: Optional[str] = None


class TemplateInstanceRequest(BaseModel):
    template_id: str
    scheduled_date: str
    start_time: str
    meeting_point_name: Optional[str] = None
    meeting_point_address: Optional[str] = None


def _json(payload: Any) -> JSONResponse:
    return JSONResponse(to_jsonable(payload))


def _read(loader: Callable[[], Any]) -> JSONResponse:
    """Run a read for a single resource; unknown ids become 404."""

    try:
        return _json(loader())
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc


def _mutate(action: Callable[[], Any]) -> JSONResponse:
    try:
        return _json(action())
    except MutationError as exc:
        status = MUTATION_STATUS.get(exc.code or "", 502)
        raise HTTPException(status_code=status, detail=exc.message) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def build_context() -> dict:
    """Load every panel for the landing page; failed panels carry their error."""

    panels = {name: service.load_panel(name) for name in ConsoleService.PANELS}
    flow = [panels[name] for name in ("signups", "squads", "gamification")]
    alerts = panels["ops_alerts"].data or []
    return {
        "flow_panels": flow,
        "alerts": alerts,
        "alerts_error": panels["ops_alerts"].error,
        "error_count": sum(1 for alert in alerts if alert.severity.value == "error"),
        "warning_count": sum(1 for alert in alerts if alert.severity.value == "warning"),
        "warmup": panels["warmup"],
        "sla": panels["sla"],
        "attention": panels["attention"],
        "flags": panels["flags"],
        "generated_at": service.now(),
    }


# Handlers stay synchronous: backend calls block, so FastAPI runs them in its threadpool.
@app.get("/", response_class=HTMLResponse)
def index() -> HTMLResponse:
    """Render the console summary page."""

    template = jinja_env.get_template("index.html")
    return HTMLResponse(template.render(**build_context()))


@app.get("/health", response_class=HTMLResponse)
def healthcheck() -> HTMLResponse:
    return HTMLResponse("admin-dashboard: ok")


@app.get("/api/flow", response_class=JSONResponse)
def api_flow(refresh: bool = False) -> JSONResponse:
    results = service.flow_report(refresh=refresh)
    return _json({name: {"data": r.data, "error": r.error} for name, r in results.items()})


@app.get("/api/flow/{panel}", response_class=JSONResponse)
def api_panel(panel: str, refresh: bool = False) -> JSONResponse:
    if panel not in ConsoleService.PANELS:
        raise HTTPException(status_code=404, detail=f"unknown panel '{panel}'")
    result = service.load_panel(panel, refresh=refresh)
    return _json({"name": result.name, "data": result.data, "error": result.error})


@app.get("/api/ops-alerts", response_class=JSONResponse)
def api_ops_alerts(refresh: bool = False) -> JSONResponse:
    result = service.load_panel("ops_alerts", refresh=refresh)
    return _json({"alerts": result.data or [], "error": result.error})


@app.get("/api/instances/{instance_id}/attention", response_class=JSONResponse)
def api_instance_attention(instance_id: str, refresh: bool = False) -> JSONResponse:
    return _read(lambda: service.instance_attention(instance_id, refresh=refresh))


@app.get("/api/instances/{instance_id}/active-squads", response_class=JSONResponse)
def api_active_squads(instance_id: str, refresh: bool = False) -> JSONResponse:
    return _read(lambda: {"squads": service.active_squads(instance_id, refresh=refresh)})


@app.get("/api/squads/{squad_id}/warmup", response_class=JSONResponse)
def api_squad_warmup(squad_id: str, refresh: bool = False) -> JSONResponse:
    return _read(lambda: service.squad_warmup(squad_id, refresh=refresh))


@app.get("/api/flags", response_class=JSONResponse)
def api_flags(refresh: bool = False) -> JSONResponse:
    return _read(lambda: {"flags": service.feature_flags(refresh=refresh)})


@app.post("/api/refresh", response_class=JSONResponse)
def api_refresh() -> JSONResponse:
    service.refresh_all()
    return _json({"refreshed": True})


@app.post("/api/instances/{instance_id}/transition", response_class=JSONResponse)
def api_transition_instance(
    instance_id: str, request: InstanceTransitionRequest
) -> JSONResponse:
    return _mutate(
        lambda: service.transition_instance(
            instance_id,
            request.status,
            reason=request.reason,
            notify_users=request.notify_users,
            admin_id=request.admin_id,
        )
    )


@app.post("/api/instances/{instance_id}/resume", response_class=JSONResponse)
def api_resume_instance(instance_id: str) -> JSONResponse:
    return _mutate(lambda: service.resume_instance(instance_id))


@app.post("/api/instances/bulk-status", response_class=JSONResponse)
def api_bulk_status(request: BulkTransitionRequest) -> JSONResponse:
    return _mutate(
        lambda: service.bulk_update_instance_status(
            request.instance_ids,
            request.status,
            reason=request.reason,
            admin_id=request.admin_id,
        )
    )


@app.post("/api/instances/from-template", response_class=JSONResponse)
def api_instance_from_template(request: TemplateInstanceRequest) -> JSONResponse:
    return _mutate(
        lambda: {
            "instance_id": service.create_instance_from_template(
                request.template_id,
                request.scheduled_date,
                request.start_time,
                meeting_point_name=request.meeting_point_name,
                meeting_point_address=request.meeting_point_address,
            )
        }
    )


@app.post("/api/squads/{squad_id}/status", response_class=JSONResponse)
def api_squad_status(squad_id: str, request: SquadStatusRequest) -> JSONResponse:
    return _mutate(
        lambda: service.update_squad_status(
            squad_id, request.status, notes=request.notes, admin_id=request.admin_id
        )
    )


@app.post("/api/signups/{signup_id}/status", response_class=JSONResponse)
def api_signup_status(signup_id: str, request: SignupStatusRequest) -> JSONResponse:
    return _mutate(
        lambda: service.force_signup_status(
            signup_id, request.status, request.reason, admin_id=request.admin_id
        )
    )


@app.post("/api/signups/{signup_id}/xp", response_class=JSONResponse)
def api_rerun_xp(signup_id: str, request: XpRerunRequest) -> JSONResponse:
    return _mutate(lambda: service.rerun_xp_award(signup_id, request.reason))


@app.patch("/api/flags/{flag_id}", response_class=JSONResponse)
def api_update_flag(flag_id: str, request: FlagUpdateRequest) -> JSONResponse:
    return _mutate(
        lambda: service.set_feature_flag(
            flag_id,
            is_enabled=request.is_enabled,
            rollout_percentage=request.rollout_percentage,
            admin_id=request.admin_id,
        )
    )


@app.delete("/api/flags/{flag_id}", response_class=JSONResponse)
def api_delete_flag(flag_id: str) -> JSONResponse:
    def action() -> dict:
        service.delete_feature_flag(flag_id)
        return {"deleted": flag_id}

    return _mutate(action)
