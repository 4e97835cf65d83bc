"""
Pydantic request/response schemas for the Ownership Screening API

Mirrors ScanResult, DiscoveryResult and graph traversal output for API validation.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


class ScreeningRequest(BaseModel):
    """Request schema for supplier screening."""
    supplier_name: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="Supplier name to screen"
    )
    country_hint: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Country name or ISO code, used to select connectors for on-demand discovery"
    )

    @field_validator('supplier_name')
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("supplier_name must not be blank")
        return v


class MatchDetail(BaseModel):
    """A listed entity reached directly or through ownership links."""
    listed_name: str = Field(..., description="Primary name of the listed entity")
    matched_name: str = Field(..., description="Listed name or alias that matched")
    match_type: str = Field(..., description="exact, fuzzy or indirect")
    name_match: str = Field(..., description="exact or fuzzy")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Match confidence (0-1)")
    path_length: int = Field(default=0, ge=0, description="Ownership hops from the supplier")
    path: List[str] = Field(default_factory=list, description="Supplier first, listed entity last")
    listing_reason: Optional[str] = None
    citation: Optional[str] = None


class ScanResultDetail(BaseModel):
    """Outcome of screening one supplier."""
    scan_id: str = Field(..., description="Unique scan ID")
    supplier_query: str
    normalized_query: str
    screened_at: str = Field(..., description="Scan timestamp (ISO 8601)")
    risk_score: float = Field(..., ge=0.0, le=10.0, description="Risk score (0-10)")
    risk_level: str = Field(..., description="clear, low, medium, high or critical")
    is_hit: bool
    match_count: int = Field(..., ge=0)
    matches: List[MatchDetail] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    possibly_incomplete: bool = Field(
        default=False,
        description="Graph data was stale, unavailable or cut short by the envelope timeout"
    )
    graph_stale: bool = False
    on_demand_discovery: bool = False


class ScreeningResponse(ScanResultDetail):
    """Response schema for supplier screening."""
    processing_time_ms: int = Field(..., ge=0, description="Total processing time in milliseconds")


class BatchScreeningRequest(BaseModel):
    """Request schema for screening a supplier file."""
    suppliers: List[ScreeningRequest] = Field(..., min_length=1, max_length=10000)


class RejectedRow(BaseModel):
    """A supplier row that failed name validation."""
    row: int = Field(..., ge=1, description="1-based position in the request")
    name: str
    field: str
    code: str
    message: str


class BatchSummary(BaseModel):
    """Portfolio summary of a batch screen."""
    total: int = Field(..., ge=0, description="Suppliers screened (rejected rows excluded)")
    counts: Dict[str, int] = Field(..., description="Suppliers per risk level")
    average_score: float = Field(..., ge=0.0, le=10.0)
    overall_level: str = Field(..., description="clear, low, medium, high or critical")
    flagged: int = Field(..., ge=0, description="Suppliers with at least one match")
    possibly_incomplete: int = Field(..., ge=0)


class BatchScreeningResponse(BaseModel):
    """Response schema for batch screening."""
    scan_id: str
    screened_at: str
    summary: BatchSummary
    results: List[ScanResultDetail] = Field(default_factory=list)
    rejected: List[RejectedRow] = Field(default_factory=list)
    processing_time_ms: int = Field(..., ge=0)


class CompanyRecordModel(BaseModel):
    """Company submitted for discovery."""
    name: str = Field(..., min_length=1, max_length=500)
    aliases: List[str] = Field(default_factory=list)
    country: Optional[str] = None
    address: Optional[str] = None


class DiscoveryRequest(BaseModel):
    """Request schema for a batch discovery run."""
    companies: List[CompanyRecordModel] = Field(..., min_length=1, max_length=10000)


class DiscoveryResponse(BaseModel):
    """Summary of a discovery run."""
    run_id: str
    metadata: Dict[str, Any]
    entities_total: int = Field(..., ge=0)
    entities_with_ownership: int = Field(..., ge=0)
    coverage_percent: float
    cancelled: bool = False
    installed: bool = False
    duration_seconds: float = 0.0


class EdgeDetail(BaseModel):
    """An ownership relationship adjacent to the queried company."""
    parent: str
    subsidiary: str
    relationshipType: str
    confidence: float
    source: str
    evidence: List[str] = Field(default_factory=list)
    discoveredAt: str


class TraversalNode(BaseModel):
    """A company reachable from the queried one."""
    name: str
    depth: int
    confidence: float
    path: List[str]


class GraphResponse(BaseModel):
    """Neighbourhood of a company in the ownership graph."""
    name: str
    found: bool
    parents: List[EdgeDetail] = Field(default_factory=list)
    subsidiaries: List[EdgeDetail] = Field(default_factory=list)
    reachable: List[TraversalNode] = Field(default_factory=list)
    stale: bool = False


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    list_loaded: bool = Field(..., description="Whether the restricted-party list is loaded")
    entries_loaded: int = Field(..., ge=0, description="Number of restricted-party entries")
    list_loaded_at: Optional[str] = None
    graph: Dict[str, Any] = Field(default_factory=dict, description="Graph snapshot statistics")
    cache_backend: str
    database_ok: Optional[bool] = Field(
        default=None,
        description="Cache database reachable (database backend only)"
    )
    algorithm_version: str = Field(..., description="Algorithm version")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
