"""Dispatch Copilot - conversational dispatch assistant API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import configure_logging, logger
from dispatch_copilot.routers import assistant, fleet


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info(
        "Dispatch Copilot API starting",
        version="0.1.0",
        llm_model=settings.llm_model,
        max_iterations=settings.bounded_max_iterations(),
        dispatch_db_path=settings.dispatch_db_path,
    )
    yield
    logger.info("Dispatch Copilot API shutting down")


app = FastAPI(
    title="Dispatch Copilot API",
    description="Conversational dispatch assistant for trucking operations - loads, drivers, and truck locations",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(assistant.router)
app.include_router(fleet.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Dispatch Copilot API",
        "version": "0.1.0",
        "description": "Conversational dispatch assistant for trucking operations",
        "endpoints": {
            "assistant": "/assistant",
            "fleet": "/fleet",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
