import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Optional, Dict, Any

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import get_settings
from errors import (
    BalanceInvariantError,
    InvalidSignatureError,
    LedgerUnavailableError,
    ReferralError,
)
from event_dispatcher import EventDispatcher
from ledger_store import InMemoryLedgerStore
from logging_config import setup_logging
from models import CommissionEntry, PayoutInstruction, format_minor_units, to_minor_units
from payout_engine import RecordingPayoutExecutor
from referral_engine import InMemoryHierarchyResolver
from webhook_auth import verify_signature

logger = structlog.get_logger(__name__)

SERVICE_NAME = "Chargebee Affiliate Integration"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.app_name)
    logger.info("service_started", version=VERSION)
    yield


app = FastAPI(title="Affiliate Commission Service", version=VERSION, lifespan=lifespan)

# CORS middleware to allow the affiliate dashboard to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# wiring
# ---------

@lru_cache()
def get_dispatcher() -> EventDispatcher:
    """
    build the dispatcher once per process from settings.
    Postgres when a DSN is configured, in-memory otherwise.
    a failed first build is not cached; the next request tries again.
    """
    settings = get_settings()

    if settings.database_dsn:
        from ledger_store_db import PostgresLedgerStore
        from referral_db import PostgresHierarchyResolver

        store = PostgresLedgerStore(settings.database_dsn)
        try:
            store.create_schema()
        except LedgerUnavailableError:
            logger.error("ledger_schema_setup_failed")
            raise HTTPException(status_code=503, detail="Ledger unavailable")
        resolver = PostgresHierarchyResolver(settings.database_dsn)
    else:
        logger.warning("using_in_memory_ledger")
        store = InMemoryLedgerStore()
        resolver = InMemoryHierarchyResolver()

    return EventDispatcher(
        config=settings.commission_config(),
        store=store,
        resolver=resolver,
        executor=RecordingPayoutExecutor(),
    )


def get_webhook_secret() -> Optional[str]:
    return get_settings().webhook_secret


async def verified_body(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    secret: Optional[str] = Depends(get_webhook_secret),
) -> bytes:
    """
    raw request body, checked against the HMAC signature when a secret is set.
    """
    body = await request.body()
    if secret:
        try:
            verify_signature(body, x_webhook_signature, secret)
        except InvalidSignatureError as e:
            logger.warning("webhook_signature_rejected", error=str(e))
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return body


# ---------
# pydantic models (requests)
# ---------

class AffiliateRegisterRequest(BaseModel):
    affiliate_id: str = Field(..., min_length=1, description="Affiliate being attached")
    referrer_id: str = Field(..., min_length=1, description="Affiliate who referred them")


class PayoutConfirmRequest(BaseModel):
    affiliate_id: str = Field(..., description="Affiliate that was paid")
    amount: Decimal = Field(..., gt=0, description="Amount disbursed, in major units")
    triggered_by: Optional[str] = Field(None, description="Event id that triggered the payout")


# ---------
# serialization helpers
# ---------

def _entry_json(entry: CommissionEntry) -> Dict[str, Any]:
    return {
        "event_id": entry.event_id,
        "affiliate_id": entry.affiliate_id,
        "subscription_id": entry.subscription_id,
        "depth": entry.depth,
        "kind": entry.kind.value,
        "amount": format_minor_units(entry.amount),
        "base_amount": entry.base_amount,
        "status": entry.status.value,
        "billing_period_start": entry.billing_period_start,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _payout_json(instruction: PayoutInstruction) -> Dict[str, Any]:
    return {
        "affiliate_id": instruction.affiliate_id,
        "amount": format_minor_units(instruction.amount),
        "triggered_by": instruction.triggered_by,
        "provider": instruction.provider,
    }


def _event_type(payload):
    return payload.get("event_type") if isinstance(payload, dict) else None


def _result_json(result: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(result)
    out["entries"] = [_entry_json(e) for e in result.get("entries", [])]
    out["payouts"] = [_payout_json(p) for p in result.get("payouts", [])]
    return out


# ---------
# endpoints
# ---------

@app.get("/")
def root():
    return {"status": "active", "service": SERVICE_NAME, "version": VERSION}


@app.get("/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/webhooks/chargebee")
def chargebee_webhook(
    body: bytes = Depends(verified_body),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    billing webhook ingestion.

    always acknowledges (200) unless the ledger could not be written:
      - malformed / unrecognized / no affiliate -> acknowledged no-op
      - duplicate delivery -> acknowledged, nothing recorded
      - ledger unavailable -> 503 so the provider redelivers
    """
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        logger.warning("webhook_body_not_json")
        return {"status": "success", "result": {"status": "malformed"}}

    try:
        result = dispatcher.handle_payload(payload)
    except LedgerUnavailableError:
        logger.error("webhook_ledger_unavailable", event_type=_event_type(payload))
        return JSONResponse(status_code=503, content={"error": "Ledger unavailable"})
    except BalanceInvariantError:
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return {"status": "success", "result": _result_json(result)}


@app.post("/api/affiliates/register")
def affiliate_register(
    payload: AffiliateRegisterRequest,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    attach an affiliate under their referrer.
    business rule violations (already has referrer, cycle) become HTTP 400s.
    """
    try:
        dispatcher.resolver.register(payload.affiliate_id, payload.referrer_id)
    except ReferralError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LedgerUnavailableError:
        raise HTTPException(status_code=503, detail="Ledger unavailable")

    chain = dispatcher.resolver.resolve(payload.affiliate_id)
    return {
        "status": "linked",
        "affiliate_id": payload.affiliate_id,
        "referrer_id": payload.referrer_id,
        "chain": [{"affiliate_id": r.affiliate_id, "depth": r.depth} for r in chain],
    }


@app.get("/api/affiliates/{affiliate_id}/balance")
def affiliate_balance(
    affiliate_id: str,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    try:
        balance = dispatcher.store.get_balance(affiliate_id)
    except LedgerUnavailableError:
        raise HTTPException(status_code=503, detail="Ledger unavailable")

    threshold = dispatcher.config.payout_threshold
    return {
        "affiliate_id": affiliate_id,
        "pending_balance": format_minor_units(balance.pending_balance),
        "lifetime_earned": format_minor_units(balance.lifetime_earned),
        "payout_threshold": format_minor_units(threshold),
        "payout_eligible": balance.pending_balance > 0 and balance.pending_balance >= threshold,
    }


@app.get("/api/affiliates/{affiliate_id}/entries")
def affiliate_entries(
    affiliate_id: str,
    limit: int = Query(50, ge=1, le=500, description="Max number of entries to return"),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    newest-first commission breakdown for an affiliate.
    """
    try:
        entries = dispatcher.store.list_entries(affiliate_id, limit)
    except LedgerUnavailableError:
        raise HTTPException(status_code=503, detail="Ledger unavailable")

    return {
        "affiliate_id": affiliate_id,
        "limit": limit,
        "entries": [_entry_json(e) for e in entries],
    }


@app.post("/api/payouts/confirm")
def payout_confirm(
    payload: PayoutConfirmRequest,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """
    callback from the payout executor once funds have moved.
    decrements pending_balance by exactly the disbursed amount.
    """
    try:
        amount = to_minor_units(payload.amount)
        balance = dispatcher.confirm_payout(payload.affiliate_id, amount, payload.triggered_by)
    except BalanceInvariantError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LedgerUnavailableError:
        raise HTTPException(status_code=503, detail="Ledger unavailable")

    return {
        "status": "paid",
        "affiliate_id": payload.affiliate_id,
        "amount": format_minor_units(amount),
        "pending_balance": format_minor_units(balance.pending_balance),
        "lifetime_earned": format_minor_units(balance.lifetime_earned),
    }


@app.post("/api/payouts/drain")
def payout_drain(dispatcher: EventDispatcher = Depends(get_dispatcher)):
    """
    hand queued payout instructions to an external disburser.
    each instruction is returned once; confirmations come back via /api/payouts/confirm.
    """
    executor = dispatcher.executor
    if not isinstance(executor, RecordingPayoutExecutor):
        raise HTTPException(status_code=404, detail="Payout queue not available")

    return {"payouts": [_payout_json(p) for p in executor.drain()]}
