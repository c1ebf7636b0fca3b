import json
import logging

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from donation_service import database
from donation_service.config import get_settings
from donation_service.database import Base, engine
from donation_service.errors import DonationError, PreconditionFailedError
from donation_service.fanout import OutcomeFanout, get_fanout
from donation_service.paymongo_service import verify_webhook_signature
from donation_service.reconciliation import handle_webhook_event
from donation_service.routes import router

logging.basicConfig(format="%(message)s", level=logging.INFO)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = FastAPI(title="CRD Donation Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(DonationError)
async def donation_error_handler(request: Request, exc: DonationError):
    content = {"success": False, "message": exc.message}
    if isinstance(exc, PreconditionFailedError):
        content["expectedStatus"] = exc.expected
    if exc.status_code >= 500:
        logger.error("Request failed", error=exc.message, method=request.method,
                     url=str(request.url))
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
def health():
    return {"status": "healthy"}


def _process_webhook(event: dict, fanout: OutcomeFanout):
    db = database.SessionLocal()
    try:
        return handle_webhook_event(db, event, fanout=fanout)
    finally:
        db.close()


@app.post("/donations/webhook")
async def paymongo_webhook(
    request: Request,
    paymongo_signature: str = Header(None),
    fanout: OutcomeFanout = Depends(get_fanout),
):
    payload = await request.body()

    secret = get_settings().paymongo_webhook_secret
    if secret and not verify_webhook_signature(payload, paymongo_signature, secret):
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    outcome = await run_in_threadpool(_process_webhook, event, fanout)
    return {"received": True, "matched": outcome.matched, "changed": outcome.changed}
