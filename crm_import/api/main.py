"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import sessions, errors, templates
from ..exceptions import (
    CommitError,
    DependencyOrderError,
    ImportCancelledError,
    ImportPipelineError,
    MappingConflictError,
    MappingError,
    NotFoundError,
    ParseError,
    SessionStateError,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="CRM Import API",
    description="API for importing CRM export files into the target CRM",
    version="0.1.0",
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Domain exception -> HTTP status, most specific first
STATUS_CODES = [
    (NotFoundError, 404),
    (MappingConflictError, 409),
    (DependencyOrderError, 409),
    (ParseError, 422),
    (SessionStateError, 400),
    (ImportCancelledError, 400),
    (MappingError, 400),
    (CommitError, 502),
]


@app.exception_handler(ImportPipelineError)
async def pipeline_error_handler(request: Request, exc: ImportPipelineError):
    status_code = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 500)
    if isinstance(exc, ParseError):
        detail = exc.to_dict()
    else:
        detail = str(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": detail})


# Include routers
app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
app.include_router(errors.router, prefix="/api/sessions/{session_id}/errors", tags=["errors"])
app.include_router(templates.router, prefix="/api/templates", tags=["templates"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
