import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "CareLoop Engine is Running",
        "features": ["messaging", "analysis", "alerts", "tasks", "programs", "reminders"],
        "endpoints": {
            "engine": "/api/engine",
            "engine_status": "/api/engine/status",
            "twilio_inbound": "/api/engine/twilio/inbound",
            "twilio_status": "/api/engine/twilio/status",
            "health": "/health",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from careloop.engine.setup import get_engine

    return {
        "status": "healthy",
        "service": "careloop-engine",
        "engine": "running" if get_engine() is not None else "not_initialized",
        "port": os.environ.get("PORT", 8080)
    }
