"""
FastAPI server for canvasflow workflow editing sessions.

Provides REST API endpoints for:
- The node type catalog shared with the execution backend
- Editing sessions (nodes, edges, config, save)
- Starting runs and reading their tracked status

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 8000 --reload
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.logger import get_logger
from shared.database import db_lifespan
from api.workflows.router import router as workflows_router
from api.workflows.services import SessionManager

logger = get_logger("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting canvasflow API server...")

    async with db_lifespan(app):
        logger.info("Database initialized")
        app.state.session_manager = SessionManager()
        try:
            yield
        finally:
            await app.state.session_manager.close_all()

    logger.info("canvasflow API server shutting down...")


app = FastAPI(
    title="canvasflow API",
    description="Workflow editing sessions and execution orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(workflows_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_logger = get_logger("api.main.errors")
    error_logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health", tags=["System"])
async def health_check():
    return {"status": "ok", "server": "canvasflow API", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
