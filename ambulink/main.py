import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ambulink.core.errors import (
    ConflictError,
    DispatchError,
    ExpiredError,
    InvalidCodeError,
    NoCandidatesError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from ambulink.core.logger import get_logger
from ambulink.core.runtime import get_runtime

from ambulink.api.v1.endpoints.health import router as health_router
from ambulink.api.v1.endpoints.triage import router as triage_router
from ambulink.api.v1.endpoints.facilities import router as facilities_router
from ambulink.api.v1.endpoints.reservations import router as reservations_router
from ambulink.api.v1.endpoints.requests import router as requests_router
from ambulink.api.v1.endpoints.resources import router as resources_router
from ambulink.api.v1.endpoints.metrics import router as metrics_router
from ambulink.api.v1.endpoints.explain import router as explain_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    runtime.sweeper.start()
    logger.info("sweeper started (every %ss)", runtime.settings.sweep_interval_seconds)
    yield
    runtime.shutdown()


app = FastAPI(
    title="Ambulink Dispatch Backend",
    version="1.0.0",
    description="Emergency transport dispatch: triage, facility matching, bed holds and ride lifecycle.",
    lifespan=lifespan,
)

# =====================================================
#  ROUTERS
# =====================================================

app.include_router(health_router, prefix="/api/v1")
app.include_router(triage_router, prefix="/api/v1")
app.include_router(facilities_router, prefix="/api/v1")
app.include_router(reservations_router, prefix="/api/v1")
app.include_router(requests_router, prefix="/api/v1")
app.include_router(resources_router, prefix="/api/v1")
app.include_router(metrics_router, prefix="/api/v1")
app.include_router(explain_router, prefix="/api/v1")

# =====================================================
#  CORS
# =====================================================

origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
#  MIDDLEWARE: REQUEST ID
# =====================================================

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response

# =====================================================
#  ERROR HANDLERS
# =====================================================

STATUS_BY_ERROR = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    ExpiredError: 410,
    InvalidCodeError: 400,
    NoCandidatesError: 503,
    SettlementError: 402,
}


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    status = STATUS_BY_ERROR.get(type(exc), 400)
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": exc.kind, "reason": exc.reason},
    )

# =====================================================
#  ROOT
# =====================================================

@app.get("/")
async def root():
    return {"status": "ok", "message": "Ambulink dispatch backend is running"}
