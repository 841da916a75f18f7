from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ambulink.core.domain import RequestState
from ambulink.core.errors import ValidationError
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.models.schemas import (
    AcceptIn,
    BroadcastResult,
    CancelIn,
    CandidateOut,
    CodeIssued,
    CompleteIn,
    CreateRequestIn,
    PreviewIn,
    PreviewResult,
    RequestOut,
    VerifyCodeIn,
)

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=RequestOut, status_code=201)
def create_request(body: CreateRequestIn, runtime: Runtime = Depends(get_runtime)):
    """
    Open a transport request: classify, quote, and start broadcasting
    to nearby eligible resources.
    """
    request = runtime.coordinator.create_request(
        requester=body.requester.to_domain(),
        pickup=body.pickup.to_domain(),
        intake=body.intake.to_domain(),
        destination=body.destination.to_domain() if body.destination else None,
        pickup_address=body.pickup_address,
        destination_facility_id=body.destination_facility_id,
    )
    return RequestOut.from_domain(request)


@router.post("/preview", response_model=PreviewResult)
def preview_request(body: PreviewIn, runtime: Runtime = Depends(get_runtime)):
    """
    Fare estimate and reachable resources before booking. Nothing is stored.
    """
    preview = runtime.coordinator.preview(
        pickup=body.pickup.to_domain(),
        intake=body.intake.to_domain(),
        destination=body.destination.to_domain() if body.destination else None,
    )
    candidates = preview["candidates"]
    return PreviewResult(
        priority=preview["priority"].value,
        required_tier=preview["required_tier"].value,
        fare_quote=preview["fare_quote"],
        count=len(candidates),
        candidates=[CandidateOut.from_domain(c) for c in candidates],
    )


@router.get("", response_model=List[RequestOut])
def list_requests(
    state: Optional[str] = Query(None, description="Filter by lifecycle state"),
    runtime: Runtime = Depends(get_runtime),
):
    parsed = None
    if state:
        try:
            parsed = RequestState(state.upper())
        except ValueError:
            raise ValidationError(f"state must be one of {[s.value for s in RequestState]}")
    return [RequestOut.from_domain(r) for r in runtime.coordinator.list_requests(parsed)]


@router.get("/{request_id}", response_model=RequestOut)
def get_request(request_id: str, runtime: Runtime = Depends(get_runtime)):
    return RequestOut.from_domain(runtime.coordinator.get_request_status(request_id))


@router.post("/{request_id}/accept", response_model=RequestOut)
def accept_request(request_id: str, body: AcceptIn, runtime: Runtime = Depends(get_runtime)):
    return RequestOut.from_domain(runtime.coordinator.accept_request(body.resource_id, request_id))


@router.post("/{request_id}/code", response_model=CodeIssued)
def issue_code(request_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.coordinator.issue_code(request_id)


@router.post("/{request_id}/verify-code", response_model=RequestOut)
def verify_code(request_id: str, body: VerifyCodeIn, runtime: Runtime = Depends(get_runtime)):
    return RequestOut.from_domain(runtime.coordinator.verify_code(body.resource_id, request_id, body.code))


@router.post("/{request_id}/complete", response_model=RequestOut)
def complete_request(request_id: str, body: Optional[CompleteIn] = None, runtime: Runtime = Depends(get_runtime)):
    body = body or CompleteIn()
    return RequestOut.from_domain(runtime.coordinator.complete_request(request_id, body.fare_paid))


@router.post("/{request_id}/cancel", response_model=RequestOut)
def cancel_request(request_id: str, body: Optional[CancelIn] = None, runtime: Runtime = Depends(get_runtime)):
    body = body or CancelIn()
    return RequestOut.from_domain(runtime.coordinator.cancel_request(request_id, body.reason))


@router.post("/{request_id}/rebroadcast", response_model=BroadcastResult)
def rebroadcast(request_id: str, runtime: Runtime = Depends(get_runtime)):
    candidates = runtime.coordinator.rebroadcast(request_id)
    return BroadcastResult(
        request_id=request_id,
        count=len(candidates),
        candidates=[CandidateOut.from_domain(c) for c in candidates],
    )
