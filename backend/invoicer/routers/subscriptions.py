"""Subscription and quota endpoints.

Endpoints:
    POST /api/subscriptions              Open the account (free plan, idempotent)
    GET  /api/subscriptions/me           Current subscription and usage
    GET  /api/subscriptions/limits       Remaining quota
    POST /api/subscriptions/plan         Change plan (counters kept)
    POST /api/subscriptions/cancel       Mark cancelled
    POST /api/subscriptions/reactivate   Mark active
"""

from fastapi import APIRouter, Depends, status

from invoicer.auth.deps import get_current_owner
from invoicer.schemas.subscription import LimitsOut, PlanChange, SubscriptionOut
from invoicer.services.ledger import LedgerService, get_ledger

router = APIRouter()


@router.post("", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
async def open_account(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.open_account(owner_id)


@router.get("/me", response_model=SubscriptionOut)
async def get_subscription(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.get_subscription(owner_id)


@router.get("/limits", response_model=LimitsOut)
async def check_limits(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.check_limits(owner_id)


@router.post("/plan", response_model=SubscriptionOut)
async def update_plan(
    body: PlanChange,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.update_plan(owner_id, body.plan)


@router.post("/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.cancel_subscription(owner_id)


@router.post("/reactivate", response_model=SubscriptionOut)
async def reactivate_subscription(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.reactivate_subscription(owner_id)
