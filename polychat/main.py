import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from polychat.core import config
from polychat.core.exceptions import PolychatError
from polychat.core.logging_config import setup_logging, sanitize_log_data
from polychat.api.routes import auth, subscriptions, billing_webhook, chats, credits, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL, config.LOG_DIR)
    settings = sanitize_log_data({
        "database_url": config.DATABASE_URL,
        "run_migrations": config.RUN_MIGRATIONS,
        "stripe_secret_key": config.STRIPE_SECRET_KEY,
        "frontend_url": config.FRONTEND_URL,
        "webhook_dedup_window_seconds": config.WEBHOOK_DEDUP_WINDOW_SECONDS,
    })
    logger.info(f"Configuration: {settings}")
    if config.RUN_MIGRATIONS:
        from polychat.db.migrate import run_migrations
        run_migrations()
    else:
        from polychat.db.init_db import init_db
        init_db()
    logger.info("Polychat API started")
    yield


# ============================================
# FASTAPI APP INIT
# ============================================

app = FastAPI(title="Polychat API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(PolychatError)
async def polychat_error_handler(request: Request, exc: PolychatError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================
# REGISTER ALL ROUTERS
# ============================================

app.include_router(auth.router)
app.include_router(subscriptions.router)
app.include_router(billing_webhook.router)
app.include_router(chats.router)
app.include_router(credits.router)
app.include_router(health.router)


@app.get("/")
def root():
    return {"status": "Polychat API running"}
