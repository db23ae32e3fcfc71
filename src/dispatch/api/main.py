from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from .routes import router as api_router
from ..db.database import create_tables
from ..errors import GeoError, TransitionError


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Dispatch API",
        description="Route planning, status validation and offline action queue for lab logistics",
        version="0.1.0",
    )

    # Create the queue table if it doesn't exist
    create_tables()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
        )

    @app.exception_handler(GeoError)
    async def geo_exception_handler(request: Request, exc: GeoError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(TransitionError)
    async def transition_exception_handler(request: Request, exc: TransitionError):
        return JSONResponse(status_code=422, content={"detail": exc.errors})

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
