# This file bootstraps the FastAPI app, wires up the logging and
# metrics middlewares, registers the referral error handler and
# includes the order ingest, attribution and admin routers.

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
import os
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.core.db import Base, engine
from app import models  # noqa: F401  registers every table on Base.metadata

from app.core.logging import APILoggingMiddleware
from app.core.metrics import MetricsMiddleware
from app.core.referral_errors import ReferralError

from app.api.orders import router as orders_router
from app.api.admin_referrals import router as admin_referrals_router
from app.api.referrals import router as referrals_router

# Create DB tables right away for local runs; deployments apply the
# Alembic migrations and set SKIP_MIGRATIONS=1.
if os.getenv("SKIP_MIGRATIONS") != "1":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Referral Commission Ledger")


@app.exception_handler(ReferralError)
def handle_referral_error(_request, exc: ReferralError):
    response = JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    response.headers["X-Error-Code"] = exc.code
    return response


# Observability layers
app.add_middleware(APILoggingMiddleware)
app.add_middleware(MetricsMiddleware)

app.include_router(orders_router)
app.include_router(referrals_router)
app.include_router(admin_referrals_router)


# /metrics endpoint (Prometheus scraping)
@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/ping")
def ping():
    return {"message": "pong"}
