"""
Main FastAPI Application

NudgeCast API with all routes registered.
"""

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nudgecast.api.exceptions import OperationFailedError
from nudgecast.api.models import HealthResponse
from nudgecast.api.public import router as public_router
from nudgecast.config import get_settings
from nudgecast.logging_config import setup_logging

setup_logging()

app = FastAPI(
    title="NudgeCast API",
    description="Cash-flow forecasting and nudge engine API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_router)


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.exception_handler(OperationFailedError)
async def operation_failed_handler(request, exc):
    """Render a failed operation's envelope as-is."""
    return JSONResponse(status_code=exc.status_code, content=exc.result)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """Handle request validation errors."""
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "Validation Error", "error_type": "invalid_request", "detail": exc.errors()}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    """Handle generic HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "HTTP Exception", "detail": exc.detail}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions."""
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal Server Error", "error_type": "internal"}
    )
