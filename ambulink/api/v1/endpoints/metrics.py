from fastapi import APIRouter, Depends, Request

from ambulink.core.audit import log_event
from ambulink.core.metrics import compute_metrics
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.models.schemas import Metrics

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", response_model=Metrics)
def get_metrics(request: Request, runtime: Runtime = Depends(get_runtime)):
    metrics = compute_metrics(
        runtime.coordinator.list_requests(),
        runtime.fleet.all(),
        runtime.directory.all(),
    )
    log_event(
        "metrics",
        {"total_requests": metrics["total_requests"], "fleet_busy": metrics["fleet_busy"]},
        run_id=getattr(request.state, "request_id", None),
    )
    return metrics
