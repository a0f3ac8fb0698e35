import logging
import math
import os
import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
from dotenv import load_dotenv

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from stayfunded import app_context
    from stayfunded.app.routes.billing import router as billing_router
    from stayfunded.app.services.billing import get_billing_config
    from stayfunded.app.billing.repository import PostgresEntitlementRepository
except ModuleNotFoundError as exc:
    if exc.name != "stayfunded":
        raise
    import app_context  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.services.billing import get_billing_config  # type: ignore[no-redef]
    from app.billing.repository import PostgresEntitlementRepository  # type: ignore[no-redef]


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "stayfunded_db"),
    user=os.getenv("DB_USER", "stayfunded"),
    password=os.getenv("DB_PASSWORD", "stayfunded"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

SITE_URL = (os.getenv("SITE_URL") or os.getenv("NEXT_PUBLIC_SITE_URL") or "http://localhost:3000").rstrip("/")

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("billing")


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="StayFunded Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[SITE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.on_event("startup")
def setup_billing() -> None:
    config = get_billing_config()
    PostgresEntitlementRepository().ensure_schema()
    logger.info(
        "Billing ready (test_mode=%s, finalized_invoice_grants_access=%s)",
        config.is_test_mode,
        config.finalized_invoice_grants_access,
    )


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}
