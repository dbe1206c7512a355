"""Spectator API: live state, presence heartbeats and viewer votes."""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, HTTPException

from quipslop.api.deps import RuntimeDep
from quipslop.core.presence import heartbeat
from quipslop.core.projection import build_live_state
from quipslop.core.tally import VoteRejectedError, cast_viewer_vote
from quipslop.models.round import LiveStatePayload, Side, WireModel

router = APIRouter(prefix="/api", tags=["live"])
logger = logging.getLogger(__name__)


class HeartbeatRequest(WireModel):
    viewer_id: str
    page: Literal["live", "broadcast"] = "live"


class HeartbeatResponse(WireModel):
    ok: bool = True
    new_viewer: bool


class VoteRequest(WireModel):
    round_id: str
    viewer_id: str
    side: Side


class VoteResponse(WireModel):
    ok: bool = True
    outcome: Literal["counted", "switched", "unchanged"]


@router.get("/state", response_model=LiveStatePayload)
async def get_state(rt: RuntimeDep) -> LiveStatePayload:
    return await build_live_state(rt)


@router.post("/viewers/heartbeat", response_model=HeartbeatResponse)
async def viewer_heartbeat(body: HeartbeatRequest, rt: RuntimeDep) -> HeartbeatResponse:
    viewer_id = body.viewer_id.strip()
    if not viewer_id:
        raise HTTPException(status_code=422, detail="Missing viewer id")
    created = await heartbeat(
        rt.engine, viewer_id, body.page, ttl_seconds=rt.settings.viewer_session_ttl_seconds
    )
    if created:
        await rt.state_changed("viewer_joined")
    return HeartbeatResponse(new_viewer=created)


@router.post("/votes", response_model=VoteResponse)
async def viewer_vote(body: VoteRequest, rt: RuntimeDep) -> VoteResponse:
    """Count a viewer's vote for the active round.

    A repeat vote for the other side moves the viewer's vote; it is never
    counted twice. Votes for a round that is not in its voting window get
    409 with the reason.
    """
    try:
        outcome = await cast_viewer_vote(rt.engine, body.round_id, body.viewer_id, body.side)
    except VoteRejectedError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if outcome != "unchanged":
        await rt.state_changed("viewer_vote", round_id=body.round_id)
    return VoteResponse(outcome=outcome)
