"""Completed-round history for the current generation."""

from __future__ import annotations

from fastapi import APIRouter, Query

from quipslop.api.deps import RuntimeDep
from quipslop.core.admin import load_state
from quipslop.core.round_store import to_round_state
from quipslop.db.engine import get_session
from quipslop.db.repository import Repository
from quipslop.models.round import RoundState, WireModel

router = APIRouter(prefix="/api/history", tags=["history"])

MAX_PAGE_SIZE = 50


class HistoryPage(WireModel):
    rounds: list[RoundState]
    page: int
    limit: int
    total: int
    total_pages: int


@router.get("", response_model=HistoryPage)
async def get_history(
    rt: RuntimeDep,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
) -> HistoryPage:
    """Finished rounds, newest first."""
    state = await load_state(rt)
    async with get_session(rt.engine) as session:
        repo = Repository(session)
        total = await repo.count_completed_rounds(state.generation)
        rows = await repo.get_completed_rounds(
            state.generation, offset=(page - 1) * limit, limit=limit
        )
    return HistoryPage(
        rounds=[to_round_state(r) for r in rows],
        page=page,
        limit=limit,
        total=total,
        total_pages=max(1, -(-total // limit)),
    )
