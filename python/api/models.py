"""
Pydantic response schemas for the Sanctions Corpus API

Records themselves are schemaless JSON (legacy corpus files carry extra
fields), so only the list projection, pagination and health payloads are
modelled strictly; the detail endpoint returns the full record as stored.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


class SanctionSummary(BaseModel):
    """Per-response summary computed from a record (never persisted)."""
    type: str = Field(..., description="Sanction type, e.g. 'UN Sanctions'")
    entity: str = Field(..., description="Entity type (individual, entity, vessel, aircraft, unknown)")
    countries: List[str] = Field(default_factory=list, description="Associated countries")
    date_updated: Optional[str] = Field(default=None, alias="dateUpdated")
    programs: List[str] = Field(default_factory=list, description="Sanction programs")
    source: str = Field(..., description="Source list (UN, EU, US)")
    identifiers: Dict[str, Any] = Field(default_factory=dict, description="Key identifying values")

    model_config = {"populate_by_name": True}


class SanctionListItem(BaseModel):
    """List-view projection of a sanctions record."""
    id: Optional[str] = Field(default=None, description="Record ID")
    name: str = Field(..., description="Display name")
    type: str = Field(..., description="Entity type")
    source: str = Field(..., description="Source list (UN, EU, US)")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    listing_date: Optional[str] = Field(default=None, alias="listingDate")
    summary: Optional[SanctionSummary] = None

    model_config = {"populate_by_name": True}

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        """Legacy corpus files may carry numeric ids."""
        return None if v is None else str(v)


class PaginationInfo(BaseModel):
    """Pagination block of a list response."""
    page: int = Field(..., ge=1, description="1-indexed page number")
    limit: int = Field(..., ge=1, description="Page size")
    total: int = Field(..., ge=0, description="Matching records before pagination")
    pages: int = Field(..., ge=0, description="ceil(total / limit)")


class SearchResponse(BaseModel):
    """Response schema for the search endpoint."""
    results: List[SanctionListItem] = Field(default_factory=list)
    pagination: PaginationInfo


class HealthResponse(BaseModel):
    """Response schema for the health check."""
    status: str = Field(..., description="'healthy', 'degraded' or 'error'")
    records: int = Field(default=0, description="Records currently served")
    by_source: Dict[str, int] = Field(default_factory=dict, alias="bySource")
    version: Optional[str] = Field(default=None, description="Current corpus version (YYYY-MM-DD)")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    timestamp: str = Field(..., description="Server time (ISO 8601)")
    uptime_seconds: Optional[int] = Field(default=None, description="Seconds since startup")
    memory_usage_mb: Optional[float] = Field(default=None, description="Resident memory of the process")
    error_message: Optional[str] = Field(default=None, description="Error details if status is not healthy")

    model_config = {"populate_by_name": True}


class ErrorDetail(BaseModel):
    """Structured error body."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")
    field: Optional[str] = Field(default=None, description="Field that caused the error")


class ErrorResponse(BaseModel):
    """Standard error response schema."""
    error: ErrorDetail
