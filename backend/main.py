import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import settings
from core.exceptions import AppError, app_error_handler
from core.limiter import limiter
from database import close_db
from services.container import build_container, open_store

# Routers
from routers import connections, events, notifications, scheduler

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = await open_store(settings)
    container = build_container(store, settings)
    app.state.container = container
    if settings.SCHEDULER_ENABLED:
        container.scheduler.start()
    logger.info("LetUsConnect API started")
    yield
    # Shutdown
    await container.scheduler.stop()
    await container.dispatcher.drain()
    await close_db()
    logger.info("LetUsConnect API stopped")


app = FastAPI(
    title="LetUsConnect API",
    description="Graphe de connexions et notifications de la plateforme LetUsConnect",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Erreurs métier → {"kind", "detail"}
app.add_exception_handler(AppError, app_error_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else ["https://letusconnect.app"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers (avec auth)
app.include_router(connections.router, prefix="/api/connections", tags=["Connections"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(scheduler.router, prefix="/api/scheduler", tags=["Scheduler"])
app.include_router(events.router, prefix="/api/events", tags=["Events"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "letusconnect", "version": "1.0.0"}
