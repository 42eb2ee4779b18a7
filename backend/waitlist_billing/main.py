import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from waitlist_billing.config import get_settings
from waitlist_billing.database import init_db
from waitlist_billing.routes import audit, invoices, reconciliation, waitlist

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = "Waitlist Billing API"

app = FastAPI(title=APP_NAME)

_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_extra = os.getenv("CORS_ORIGINS", "")
if _extra:
    _cors_origins.extend(o.strip() for o in _extra.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(waitlist.router, prefix="/api", tags=["waitlist"])
app.include_router(invoices.router, prefix="/api", tags=["invoices"])
app.include_router(audit.router, prefix="/api", tags=["audit"])
app.include_router(reconciliation.router, prefix="/api", tags=["reconciliation"])


@app.on_event("startup")
def on_startup():
    init_db()  # imports models and creates tables
    logger.info(f"{APP_NAME} started ({len(app.routes)} routes)")


@app.get("/api/health")
def health_check():
    return {"app_name": APP_NAME, "status": "healthy"}
