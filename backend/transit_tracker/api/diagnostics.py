"""Pipeline diagnostics: model sizes and vehicle matching counts."""

from fastapi import APIRouter, Request

from transit_tracker.schemas.route import Diagnostics

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])


@router.get("", response_model=Diagnostics)
async def get_diagnostics(request: Request):
    # Reports the current state without forcing a load
    return request.app.state.live.get_diagnostics()
