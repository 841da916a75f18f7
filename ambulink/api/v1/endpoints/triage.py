from fastapi import APIRouter, Depends

from ambulink.core.runtime import Runtime, get_runtime
from ambulink.core.triage import score_intake
from ambulink.models.schemas import IntakeIn, TriageResult

router = APIRouter(prefix="/triage", tags=["triage"])


@router.post("", response_model=TriageResult)
def triage(body: IntakeIn, runtime: Runtime = Depends(get_runtime)):
    result = score_intake(body.to_domain())
    priority = result["priority"]
    return TriageResult(
        priority=priority.value,
        score=result["score"],
        required_tier=runtime.settings.required_tier(priority).value,
        breakdown=result["breakdown"],
        keyword_tier=result["keyword_tier"],
        keyword=result["keyword"],
    )
