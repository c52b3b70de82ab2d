"""Remote connectivity diagnostic API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from attachsync.server.api.deps import get_engine
from attachsync.server.schemas import DiagnoseResponse, diagnose_to_response
from attachsync.sync.engine import SyncEngine

router = APIRouter(prefix="/api", tags=["diagnostics"])


@router.get("/diagnose", response_model=DiagnoseResponse)
async def diagnose(engine: SyncEngine = Depends(get_engine)) -> DiagnoseResponse:
    """Check the configured organization URL and token.

    Always answers 200; a failed check carries the remote status, guidance
    and likely causes.
    """
    report = await engine.client.diagnose()
    return diagnose_to_response(report)
