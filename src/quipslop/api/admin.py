"""Admin API: status, pause/resume, reset, export and timing overrides.

Every route requires the ``x-admin-secret`` header (see ``require_admin``).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from quipslop.api.deps import RunnerDep, RuntimeDep, require_admin
from quipslop.core import admin
from quipslop.models.round import AdminSnapshot, RoundTiming, WireModel

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


class ResetRequest(WireModel):
    confirm: str = ""


class ResetResponse(WireModel):
    ok: bool = True
    generation: int


class TimingRequest(WireModel):
    viewer_vote_window_active_seconds: float | None = None
    viewer_vote_window_idle_seconds: float | None = None
    post_round_delay_seconds: float | None = None


class ControlResponse(WireModel):
    ok: bool = True
    started_runner: bool = False
    status: AdminSnapshot


@router.get("/status", response_model=AdminSnapshot)
async def admin_status(rt: RuntimeDep) -> AdminSnapshot:
    return await admin.snapshot(rt)


@router.post("/pause", response_model=ControlResponse)
async def admin_pause(rt: RuntimeDep) -> ControlResponse:
    await admin.pause(rt)
    return ControlResponse(status=await admin.snapshot(rt))


@router.post("/resume", response_model=ControlResponse)
async def admin_resume(rt: RuntimeDep, runner: RunnerDep) -> ControlResponse:
    started = await admin.resume(rt, runner)
    return ControlResponse(started_runner=started, status=await admin.snapshot(rt))


@router.post("/reset", response_model=ResetResponse)
async def admin_reset(body: ResetRequest, rt: RuntimeDep) -> ResetResponse:
    try:
        generation = await admin.reset(rt, body.confirm)
    except admin.AdminError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return ResetResponse(generation=generation)


@router.get("/export")
async def admin_export(rt: RuntimeDep) -> dict:
    return await admin.export_data(rt)


@router.post("/timing", response_model=RoundTiming)
async def admin_timing(body: TimingRequest, rt: RuntimeDep) -> RoundTiming:
    try:
        return await admin.update_timing(rt, **body.model_dump())
    except admin.AdminError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
