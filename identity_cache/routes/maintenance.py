"""
Maintenance endpoints.

Full verification and the unverified re-check talk to the remote authority
record by record and can take minutes, so they run as background tasks; the
other operations answer with their result.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from identity_cache.db.helpers import DatabaseError
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.api.directory_response import MaintenanceResponse
from identity_cache.routes.dependencies import get_engine
from identity_cache.services.engine import IdentityCacheEngine

router = APIRouter(prefix="/directory/maintenance", tags=["maintenance"])
logger = get_logger(__name__)


@router.post("/cleanup", response_model=MaintenanceResponse)
async def run_cleanup(engine: IdentityCacheEngine = Depends(get_engine)):
    """Run duplicate cleanup now, ignoring the cooldown."""
    result = await engine.maintenance.run_cleanup()
    return MaintenanceResponse(operation="cleanup", result=result)


@router.post("/consolidate", response_model=MaintenanceResponse)
async def consolidate_direct_channels(engine: IdentityCacheEngine = Depends(get_engine)):
    try:
        result = await engine.dedup.consolidate_direct_channels()
    except DatabaseError as e:
        logger.error("Direct channel consolidation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Consolidation failed"
        ) from e
    return MaintenanceResponse(operation="consolidate_direct_channels", result=result)


@router.post(
    "/full-verification",
    response_model=MaintenanceResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def full_verification(
    background_tasks: BackgroundTasks,
    next_startup: bool = Query(False, description="Only flag the pass for the next startup"),
    engine: IdentityCacheEngine = Depends(get_engine),
):
    try:
        await engine.maintenance.request_full_verification()
    except DatabaseError as e:
        logger.error("Failed to flag full verification", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to schedule verification",
        ) from e

    if not next_startup:
        background_tasks.add_task(engine.maintenance.run_full_verification)
    return MaintenanceResponse(operation="full_verification", result={"scheduled": True})


@router.post(
    "/verify-unverified",
    response_model=MaintenanceResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def verify_unverified(
    background_tasks: BackgroundTasks, engine: IdentityCacheEngine = Depends(get_engine)
):
    background_tasks.add_task(engine.verifier.verify_unverified_records)
    return MaintenanceResponse(operation="verify_unverified", result={"scheduled": True})


@router.post("/expiry-sweep", response_model=MaintenanceResponse)
async def expiry_sweep(engine: IdentityCacheEngine = Depends(get_engine)):
    removed = await engine.maintenance.sweep_expired()
    return MaintenanceResponse(operation="expiry_sweep", result={"removed": removed})


@router.post("/ui-operations/start")
async def ui_operation_start(engine: IdentityCacheEngine = Depends(get_engine)):
    """Hold off opportunistic cleanup while a UI-critical operation runs."""
    engine.maintenance.mark_ui_operation_start()
    return {"in_progress": engine.maintenance.ui_operations_in_progress}


@router.post("/ui-operations/end")
async def ui_operation_end(engine: IdentityCacheEngine = Depends(get_engine)):
    engine.maintenance.mark_ui_operation_end()
    return {"in_progress": engine.maintenance.ui_operations_in_progress}
