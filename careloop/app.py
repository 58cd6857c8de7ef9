"""
CareLoop Engine Server — Application Factory
"""

import os
import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("careloop-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="CareLoop Engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from careloop.routers import engine_api, health

app.include_router(health.router)
app.include_router(engine_api.router)


# ── 4. Startup / shutdown events ──
@app.on_event("startup")
async def startup_event():
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("CareLoop Engine Starting")
    logger.info("Listening on port: %s", port)

    # Engine must be up before serving requests
    try:
        from careloop.engine.setup import initialize_engine
        await initialize_engine()
        logger.info("CareLoop engine initialized")
    except Exception as e:
        logger.warning("Engine failed to start — running without it: %s", e, exc_info=True)

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    try:
        from careloop.engine.setup import shutdown_engine
        await shutdown_engine()
    except Exception as e:
        logger.warning("Engine shutdown error: %s", e)
