from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ambulink.core.domain import RequestState
from ambulink.core.runtime import Runtime, get_runtime

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(runtime: Runtime = Depends(get_runtime)):
    """
    Health check API:
    - service is up
    - registries are loaded
    """
    open_requests = [r for r in runtime.coordinator.list_requests() if not r.state.is_terminal]
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "facilities": len(runtime.directory),
        "resources": len(runtime.fleet),
        "active_reservations": runtime.reservations.active_count(),
        "open_requests": len(open_requests),
        "broadcasting": sum(1 for r in open_requests if r.state == RequestState.BROADCASTING),
    }
