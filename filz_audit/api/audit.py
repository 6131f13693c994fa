"""Audit API endpoints.

Provides access to the audit chain: trails, search, verification,
collaborator ingress and the operator exclusion setting.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from filz_audit.api.security import require_admin
from filz_audit.audit.exceptions import (
    AppendInvariantViolation,
    AuditError,
    ImmutabilityViolation,
    StorageFailure,
)
from filz_audit.audit.models import (
    AuditAction,
    AuditLogEntry,
    AuditSearchQuery,
    AuditVerificationResult,
    ResourceType,
    SortOrder,
)
from filz_audit.audit.service import AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])


def get_audit_service(request: Request) -> AuditService:
    """Audit service created by the application lifespan."""
    return request.app.state.audit_service


def _http_error(error: AuditError) -> HTTPException:
    if isinstance(error, StorageFailure):
        logger.error("Audit storage failure: %s", error.message)
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=error.message)
    if isinstance(error, ImmutabilityViolation):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)
    if isinstance(error, AppendInvariantViolation):
        logger.critical("Audit chain invariant violated: %s", error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


# =============================================================================
# Request/Response Models
# =============================================================================


class CamelModel(BaseModel):
    """Base for wire models: camelCase JSON, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuditLogResponse(CamelModel):
    """Audit entry as exposed to consumers."""

    id: int
    timestamp: datetime
    user_principal: str
    action: AuditAction
    resource_type: ResourceType | None
    resource_id: str | None
    metadata: dict[str, Any] | None = None
    previous_hash: str
    hash: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> AuditLogResponse:
        return cls(
            id=entry.sequence_id,
            timestamp=entry.timestamp,
            user_principal=entry.user_principal,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            metadata=entry.metadata,
            previous_hash=entry.previous_hash,
            hash=entry.hash,
        )


class BrokenLinkResponse(CamelModel):
    entry_id: int
    expected_hash: str
    actual_hash: str


class VerificationResponse(CamelModel):
    """Response from chain verification."""

    status: str
    total_entries: int
    verified_entries: int
    verified_at: datetime
    broken_link: BrokenLinkResponse | None = None

    @classmethod
    def from_result(cls, result: AuditVerificationResult) -> VerificationResponse:
        broken = result.broken_link
        return cls(
            status=result.status.value,
            total_entries=result.total_entries,
            verified_entries=result.verified_entries,
            verified_at=result.verified_at,
            broken_link=BrokenLinkResponse(
                entry_id=broken.entry_id,
                expected_hash=broken.expected_hash,
                actual_hash=broken.actual_hash,
            ) if broken else None,
        )


class AuditSearchRequest(CamelModel):
    """Entries matching all provided criteria are returned."""

    resource_id: str | None = Field(default=None, description="Resource ID to search for")
    resource_type: ResourceType | None = Field(default=None, description="Resource type filter")
    action: AuditAction | None = Field(default=None, description="Action filter")
    user_principal: str | None = Field(default=None, description="User who made the action")
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Metadata key-value pairs the entry must contain"
    )
    start_time: datetime | None = Field(default=None, description="Start time filter")
    end_time: datetime | None = Field(default=None, description="End time filter")
    limit: int = Field(default=100, ge=1, le=1000, description="Max entries to return")
    offset: int = Field(default=0, ge=0, description="Offset for pagination")

    def to_query(self) -> AuditSearchQuery:
        return AuditSearchQuery(**self.model_dump(by_alias=False))


class RecordEventRequest(CamelModel):
    """Request from a collaborator to record a mutating action."""

    action: AuditAction = Field(description="Action kind, e.g. CREATE_FOLDER")
    resource_type: ResourceType | None = Field(default=None, description="Type of resource affected")
    resource_id: str | None = Field(default=None, description="ID of resource affected")
    user_principal: str = Field(min_length=1, max_length=256, description="Actor performing the action")
    metadata: dict[str, Any] | None = Field(default=None, description="Action details")


class RecordEventResponse(CamelModel):
    status: Literal["appended", "skipped"]
    entry: AuditLogResponse | None = None


class ExclusionsRequest(CamelModel):
    actions: list[AuditAction] = Field(description="Complete replacement set of excluded actions")


class ExclusionsResponse(CamelModel):
    actions: list[AuditAction]


def _parse_sort_order(value: str) -> SortOrder:
    try:
        return SortOrder(value.upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid sortOrder: {value}. Valid values: {[s.value for s in SortOrder]}",
        )


# =============================================================================
# Audit Endpoints
# =============================================================================


@router.get(
    "/verify",
    response_model=VerificationResponse,
    response_model_exclude_none=True,
)
async def verify_chain(
    service: AuditService = Depends(get_audit_service),
) -> VerificationResponse:
    """Verify the integrity of the audit chain.

    Tampering is reported as status BROKEN with the first broken link,
    not as an error.
    """
    try:
        result = await service.verify()
    except AuditError as e:
        raise _http_error(e)
    return VerificationResponse.from_result(result)


@router.post("/search", response_model=list[AuditLogResponse])
async def search_audit_trail(
    request: AuditSearchRequest,
    service: AuditService = Depends(get_audit_service),
) -> list[AuditLogResponse]:
    """Search audit entries. Results are in chain order."""
    try:
        entries = await service.search(request.to_query())
    except AuditError as e:
        raise _http_error(e)
    return [AuditLogResponse.from_entry(e) for e in entries]


@router.post(
    "/record",
    response_model=RecordEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_event(
    request: RecordEventRequest,
    response: Response,
    service: AuditService = Depends(get_audit_service),
) -> RecordEventResponse:
    """Record a mutating action in the chain.

    Returns once the entry is linked. Excluded actions are acknowledged
    with status "skipped" and leave the chain untouched.
    """
    try:
        entry = await service.record(
            request.action,
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            user_principal=request.user_principal,
            metadata=request.metadata,
        )
    except AuditError as e:
        raise _http_error(e)
    except ValueError as e:
        # Values the JSON body allows but the hashed form cannot carry (NaN, `|` in ids)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if entry is None:
        response.status_code = status.HTTP_200_OK
        return RecordEventResponse(status="skipped")

    return RecordEventResponse(status="appended", entry=AuditLogResponse.from_entry(entry))


@router.get("/exclusions", response_model=ExclusionsResponse)
async def get_exclusions(
    service: AuditService = Depends(get_audit_service),
) -> ExclusionsResponse:
    """List actions currently excluded from the chain."""
    return ExclusionsResponse(actions=sorted(service.exclusions.excluded, key=lambda a: a.value))


@router.put("/exclusions", response_model=ExclusionsResponse)
async def set_exclusions(
    request: ExclusionsRequest,
    service: AuditService = Depends(get_audit_service),
    _admin: str = Depends(require_admin),
) -> ExclusionsResponse:
    """Replace the excluded action set. Operators only."""
    try:
        excluded = service.set_excluded_actions(request.actions)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ExclusionsResponse(actions=sorted(excluded, key=lambda a: a.value))


@router.get("/actions", response_model=list[str])
async def list_actions() -> list[str]:
    """List all auditable action kinds."""
    return [a.value for a in AuditAction]


@router.get("/entries/{entry_id}", response_model=AuditLogResponse)
async def get_audit_entry(
    entry_id: int,
    service: AuditService = Depends(get_audit_service),
) -> AuditLogResponse:
    """Get a single chain entry by its sequence id."""
    try:
        entry = await service.queries.get_entry(entry_id)
    except AuditError as e:
        raise _http_error(e)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Audit entry {entry_id} not found",
        )
    return AuditLogResponse.from_entry(entry)


@router.get("/{resource_id}", response_model=list[AuditLogResponse])
async def get_audit_trail(
    resource_id: str,
    sort_order: str = Query(default="DESC", alias="sortOrder", description="ASC or DESC"),
    service: AuditService = Depends(get_audit_service),
) -> list[AuditLogResponse]:
    """Get the audit trail of a resource."""
    order = _parse_sort_order(sort_order)
    try:
        entries = await service.get_trail(resource_id, order)
    except AuditError as e:
        raise _http_error(e)
    return [AuditLogResponse.from_entry(e) for e in entries]
