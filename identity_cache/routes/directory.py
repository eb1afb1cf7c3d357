"""
directory.py
------------
Purpose:
    Collaborator-facing endpoints of the directory cache.

Usage:
    POST   /directory/search-results        - ingest harvested search results
    POST   /directory/interactions          - record a chat-opened event
    POST   /directory/records/{id}/pin      - pin (appended at the end)
    DELETE /directory/records/{id}/pin      - unpin
    PUT    /directory/pins/order            - explicit pin order
    GET    /directory/pinned | recent | important | current
    GET    /directory/records/{id}
    GET    /directory/lookup?name=...|channel_identifier=...
    GET    /directory/search?q=...          - ranked local search
    GET    /directory/coverage?q=...        - whether local results suffice
    GET    /directory/statistics
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.models.api.directory_request import PinReorderRequest, SearchIngestRequest
from identity_cache.models.api.directory_response import (
    CoverageResponse,
    ImportantRecordResponse,
    IngestResponse,
    InteractionResponse,
    PinResponse,
    RankedRecordResponse,
    SearchResponse,
)
from identity_cache.models.domain.record_domain import IncomingEntry, Record
from identity_cache.routes.dependencies import get_engine
from identity_cache.services.engine import IdentityCacheEngine

router = APIRouter(prefix="/directory", tags=["directory"])
logger = get_logger(__name__)


@router.post("/search-results", response_model=IngestResponse)
async def ingest_search_results(
    payload: SearchIngestRequest, engine: IdentityCacheEngine = Depends(get_engine)
):
    accepted = await engine.pipeline.ingest_search_results(payload.term, payload.items)
    return IngestResponse(accepted=len(accepted), record_ids=[r.id for r in accepted])


@router.post("/interactions", response_model=InteractionResponse)
async def record_interaction(
    entry: IncomingEntry,
    background_tasks: BackgroundTasks,
    engine: IdentityCacheEngine = Depends(get_engine),
):
    result = await engine.pipeline.record_interaction(entry)

    if result.needs_recovery and result.record is not None:
        background_tasks.add_task(engine.pipeline.recover_no_name_group, result.record.id)
    if result.needs_repair and result.record is not None:
        background_tasks.add_task(engine.pipeline.repair_missing_channel_identifier, result.record.id)
    if result.recorded:
        background_tasks.add_task(engine.maintenance.maybe_run_cleanup)

    return InteractionResponse(
        status=result.status,
        reason=result.reason,
        record=result.record,
        recovery_scheduled=result.needs_recovery,
    )


@router.post("/records/{record_id}/pin", response_model=PinResponse)
async def pin_record(record_id: str, engine: IdentityCacheEngine = Depends(get_engine)):
    success = await engine.directory.pin(record_id)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Record not found or cannot be pinned"
        )
    return PinResponse(success=True, record_id=record_id)


@router.delete("/records/{record_id}/pin", response_model=PinResponse)
async def unpin_record(record_id: str, engine: IdentityCacheEngine = Depends(get_engine)):
    success = await engine.directory.unpin(record_id)
    if not success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return PinResponse(success=True, record_id=record_id)


@router.put("/pins/order")
async def reorder_pins(payload: PinReorderRequest, engine: IdentityCacheEngine = Depends(get_engine)):
    if not await engine.directory.reorder_pins(payload.record_ids):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to reorder pins"
        )
    return {"success": True}


@router.get("/pinned", response_model=list[Record])
async def pinned_records(engine: IdentityCacheEngine = Depends(get_engine)):
    return await engine.directory.pinned_records()


@router.get("/recent", response_model=list[Record])
async def recent_records(engine: IdentityCacheEngine = Depends(get_engine)):
    return await engine.directory.recent_records()


@router.get("/important", response_model=list[ImportantRecordResponse])
async def important_records(engine: IdentityCacheEngine = Depends(get_engine)):
    return [
        ImportantRecordResponse(result_type=item.result_type, record=item.record)
        for item in await engine.directory.important_records()
    ]


@router.get("/current", response_model=Record | None)
async def current_record(engine: IdentityCacheEngine = Depends(get_engine)):
    return await engine.directory.current_record()


@router.get("/records/{record_id}", response_model=Record)
async def get_record(record_id: str, engine: IdentityCacheEngine = Depends(get_engine)):
    record = await engine.directory.get(record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record


@router.get("/lookup", response_model=Record)
async def lookup_record(
    name: str | None = Query(None, min_length=1),
    channel_identifier: str | None = Query(None, min_length=1),
    engine: IdentityCacheEngine = Depends(get_engine),
):
    if channel_identifier:
        record = await engine.directory.lookup_by_channel_identifier(channel_identifier)
    elif name:
        record = await engine.directory.lookup_by_name(name)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide either name or channel_identifier",
        )

    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record


@router.get("/search", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    engine: IdentityCacheEngine = Depends(get_engine),
):
    ranked = await engine.directory.search(q, limit=limit)
    logger.debug("Local search served", query_length=len(q), results=len(ranked))
    return SearchResponse(
        query=q,
        results=[
            RankedRecordResponse(
                record=r.record, search_score=r.search_score, match_reasons=r.match_reasons
            )
            for r in ranked
        ],
    )


@router.get("/coverage", response_model=CoverageResponse)
async def coverage(q: str = Query(..., min_length=1), engine: IdentityCacheEngine = Depends(get_engine)):
    return CoverageResponse(query=q, has_good_coverage=await engine.directory.has_good_coverage(q))


@router.get("/statistics")
async def statistics(engine: IdentityCacheEngine = Depends(get_engine)):
    stats = await engine.directory.statistics()
    if "error" in stats:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Statistics unavailable"
        )
    return stats
