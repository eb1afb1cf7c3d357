from pydantic import BaseModel, Field

from identity_cache.models.domain.record_domain import IncomingEntry


class SearchIngestRequest(BaseModel):
    """Search results harvested for a term."""

    term: str = Field(..., min_length=1, max_length=200)
    items: list[IncomingEntry] = Field(default_factory=list)


class PinReorderRequest(BaseModel):
    record_ids: list[str] = Field(..., description="Pinned record ids in their new order")
