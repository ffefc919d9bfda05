"""
CareLine Triage Server — Application Factory
"""

import os
import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("careline-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="CareLine Triage Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from careline.routers import health, triage_api

app.include_router(health.router)
app.include_router(triage_api.router)


# ── 4. Startup / shutdown events ──
@app.on_event("startup")
async def startup_event():
    """Log startup information and start the triage engine"""
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("CareLine Triage Server Starting")
    logger.info(f"Listening on port: {port}")

    # Initialize the engine (blocking, needed before serving requests)
    try:
        from careline.triage.setup import initialize_engine
        await initialize_engine()
        logger.info("Triage engine initialized")
    except Exception as e:
        logger.error(f"Triage engine failed to start — API will answer 503: {e}", exc_info=True)

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from careline.triage.setup import shutdown_engine
    await shutdown_engine()
