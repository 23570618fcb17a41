"""
Workflow API Application Factory
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..exceptions import (
    AuthorizationError, ConflictError, ExternalActionError, NotFoundError,
    ValidationError, WorkflowError
)
from .approvals import router as approvals_router
from .definitions import router as definitions_router
from .instances import router as instances_router
from .sla import router as sla_router
from .templates import router as templates_router

logger = logging.getLogger("workflow.api")

# Most specific first; InvalidTransitionError is a ValidationError
ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (AuthorizationError, 403),
    (ExternalActionError, 502),
]


def status_for(exc: WorkflowError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Workflow Engine API",
        description="Workflow definitions, instances, approvals, SLA tracking and templates",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(WorkflowError, workflow_error_handler)

    app.include_router(templates_router, prefix="/workflow-templates", tags=["Templates"])
    app.include_router(definitions_router, prefix="/workflows", tags=["Definitions"])
    app.include_router(instances_router, prefix="/workflow-instances", tags=["Instances"])
    app.include_router(approvals_router, prefix="/approvals", tags=["Approvals"])
    app.include_router(sla_router, prefix="/sla", tags=["SLA"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "workflow_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        return {
            "name": "Workflow Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "templates": "/workflow-templates",
                "workflows": "/workflows",
                "instances": "/workflow-instances",
                "approvals": "/approvals",
                "sla": "/sla"
            }
        }

    return app


app = create_app()
