"""
FastAPI router for roadside service requests.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from arbiter import accept_request, reject_request
from auth_deps import get_current_admin, get_current_customer, get_current_mechanic, get_current_user
from dispatch import create_request
from request_lifecycle import add_note, cancel_request, update_status
from request_models import (
    AcceptPayload,
    CancelPayload,
    CreateRequestResponse,
    IssueType,
    NoteCreate,
    NoteResponse,
    PaymentEligibility,
    RejectPayload,
    RequestCreate,
    RequestPriority,
    RequestResponse,
    RequestStatus,
    RequestSummary,
    SortBy,
    SortOrder,
    StatusUpdate,
)
from request_queries import (
    get_snapshot,
    list_customer_requests,
    list_requests,
    payment_eligibility,
    request_summary,
)

router = APIRouter(prefix="/api/requests", tags=["requests"])


@router.post("", response_model=CreateRequestResponse, status_code=201)
async def create_service_request(
    payload: RequestCreate,
    current_user: dict[str, Any] = Depends(get_current_customer),
):
    return await create_request(current_user, payload)


@router.get("/mine", response_model=list[RequestResponse])
async def list_my_requests(
    status: RequestStatus | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user: dict[str, Any] = Depends(get_current_customer),
):
    return await list_customer_requests(int(current_user["id"]), status=status, limit=limit, offset=offset)


@router.get("/summary", response_model=RequestSummary)
async def get_requests_summary(current_user: dict[str, Any] = Depends(get_current_admin)):
    return await request_summary()


@router.get("", response_model=list[RequestResponse])
async def list_all_requests(
    status: RequestStatus | None = None,
    priority: RequestPriority | None = None,
    issue_type: IssueType | None = None,
    sort_by: SortBy = "created_at",
    sort_order: SortOrder = "desc",
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    current_user: dict[str, Any] = Depends(get_current_admin),
):
    return await list_requests(
        status=status,
        priority=priority,
        issue_type=issue_type,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )


@router.get("/{request_id}", response_model=RequestResponse)
async def get_service_request(
    request_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await get_snapshot(request_id, current_user)


@router.post("/{request_id}/accept", response_model=RequestResponse)
async def accept_service_request(
    request_id: int,
    payload: AcceptPayload | None = None,
    current_user: dict[str, Any] = Depends(get_current_mechanic),
):
    return await accept_request(request_id, current_user, payload)


@router.post("/{request_id}/reject", response_model=RequestResponse)
async def reject_service_request(
    request_id: int,
    payload: RejectPayload | None = None,
    current_user: dict[str, Any] = Depends(get_current_mechanic),
):
    return await reject_request(request_id, current_user, payload.reason if payload else None)


@router.patch("/{request_id}/status", response_model=RequestResponse)
async def update_service_request_status(
    request_id: int,
    payload: StatusUpdate,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await update_status(request_id, current_user, payload)


@router.post("/{request_id}/cancel", response_model=RequestResponse)
async def cancel_service_request(
    request_id: int,
    payload: CancelPayload,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await cancel_request(request_id, current_user, payload.reason)


@router.post("/{request_id}/notes", response_model=NoteResponse, status_code=201)
async def add_service_request_note(
    request_id: int,
    payload: NoteCreate,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await add_note(request_id, current_user, payload.text)


@router.get("/{request_id}/payment-eligibility", response_model=PaymentEligibility)
async def get_payment_eligibility(
    request_id: int,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await payment_eligibility(request_id, current_user)
