import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from invoicer.config import settings
from invoicer.database import engine
from invoicer.logging_config import setup_logging
from invoicer.middleware.exceptions import register_exception_handlers
from invoicer.routers import clients, health, invoices, payments, subscriptions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Invoicer starting ({settings.environment})")
    yield
    await engine.dispose()
    logger.info("Invoicer stopped")


app = FastAPI(
    title="Invoicer",
    description="Freelance invoicing ledger: invoices, payments and plan quotas",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
app.include_router(payments.router, prefix="/api/payments", tags=["payments"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(clients.router, prefix="/api/clients", tags=["clients"])
