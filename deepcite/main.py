from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deepcite.api.routes import jobs
from deepcite.config import settings
from deepcite.errors import (
    DeepciteError,
    InvalidJobStateError,
    JobAlreadyRunningError,
    JobNotFoundError,
)
from deepcite.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_service.log_event(
        "app_started",
        "deepcite API started",
        routing=settings.routing_strategy,
        store=settings.store_backend,
    )
    yield
    log_service.log_event("app_stopped", "deepcite API stopped")


app = FastAPI(
    title="deepcite",
    description="Autonomous, citation-grounded research engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeepciteError)
async def deepcite_error_handler(request: Request, exc: DeepciteError):
    if isinstance(exc, JobNotFoundError):
        status = 404
    elif isinstance(exc, (InvalidJobStateError, JobAlreadyRunningError)):
        status = 409
    else:
        status = 500
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# Routes
app.include_router(jobs.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepcite", "routing": settings.routing_strategy}
