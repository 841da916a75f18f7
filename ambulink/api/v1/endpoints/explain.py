from fastapi import APIRouter, Depends, Request

from ambulink.core.audit import log_event
from ambulink.core.explain import build_recommendation_explanation
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.models.schemas import ExplainIn, ExplainResult

router = APIRouter(prefix="/explain", tags=["explain"])


@router.post("", response_model=ExplainResult)
def explain(body: ExplainIn, request: Request, runtime: Runtime = Depends(get_runtime)):
    candidates = runtime.matcher.recommend(body.location.to_domain(), body.need, body.priority, body.bed_type)
    item = build_recommendation_explanation(candidates, body.need, body.priority)

    log_event(
        "explain",
        {"facility_id": item["facility_id"], "candidates": len(candidates)},
        run_id=getattr(request.state, "request_id", None),
    )
    return ExplainResult(**item)
