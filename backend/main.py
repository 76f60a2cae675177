"""
Roadside Dispatch API Server

FastAPI server that takes roadside-assistance requests from customers,
dispatches them to nearby mechanics and tracks each request through its
lifecycle, pushing live updates over WebSocket.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auth_api import router as auth_router
from config import APP_ENV, FRONTEND_ORIGINS, LOG_LEVEL
from db import init_db
from events_api import router as events_router
from mechanic_api import router as mechanic_router
from notifications import notification_dispatcher
from request_api import router as request_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    logger.info("Dispatch API started (%s)", APP_ENV)
    yield
    # Let in-flight notifications finish before the loop goes away.
    await notification_dispatcher.drain()


# Create FastAPI app
app = FastAPI(
    title="Roadside Dispatch API",
    description="API for creating, dispatching and tracking roadside service requests",
    version="1.0.0",
    lifespan=lifespan,
)

# Enable CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(request_router)
app.include_router(mechanic_router)
app.include_router(events_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "roadside-dispatch-api"}


# Development server
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
