from typing import Any, Literal

from pydantic import BaseModel, Field

from identity_cache.models.domain.record_domain import Record


class IngestResponse(BaseModel):
    accepted: int
    record_ids: list[str]


class InteractionResponse(BaseModel):
    status: Literal["recorded", "rejected", "suppressed", "discarded"]
    reason: str | None = None
    record: Record | None = None
    recovery_scheduled: bool = False


class PinResponse(BaseModel):
    success: bool
    record_id: str


class RankedRecordResponse(BaseModel):
    record: Record
    search_score: int
    match_reasons: list[str]


class SearchResponse(BaseModel):
    query: str
    results: list[RankedRecordResponse]


class CoverageResponse(BaseModel):
    query: str
    has_good_coverage: bool


class ImportantRecordResponse(BaseModel):
    result_type: Literal["pinned", "recent"]
    record: Record


class MaintenanceResponse(BaseModel):
    operation: str
    result: dict[str, Any] = Field(default_factory=dict)
