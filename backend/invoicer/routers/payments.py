"""Payment recording and settlement.

Endpoints:
    POST   /api/payments                  Apply (or record pending) a payment
    GET    /api/payments                  List payments across invoices
    GET    /api/payments/stats            Counts and completed amounts
    PATCH  /api/payments/{id}             Edit a pending/failed payment
    DELETE /api/payments/{id}             Delete a pending/failed payment
    POST   /api/payments/{id}/complete    pending → completed (applies it)
    POST   /api/payments/{id}/fail        pending → failed
"""

from fastapi import APIRouter, Depends, Query, Response, status

from invoicer.auth.deps import get_current_owner
from invoicer.models.payment import PaymentMethod, PaymentStatus
from invoicer.schemas.common import PaginatedResponse
from invoicer.schemas.payment import (
    PaymentCreate,
    PaymentFailIn,
    PaymentOut,
    PaymentStats,
    PaymentUpdate,
)
from invoicer.services.ledger import LedgerService, get_ledger

router = APIRouter()


# ── POST /api/payments ───────────────────────────────────────

@router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: PaymentCreate,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    """Apply a payment to an invoice.

    Completed payments update amount_paid/amount_due at once and mark the
    invoice paid when nothing is left to pay.  Pending payments are
    stored for later completion.
    """
    return await ledger.record_payment(
        invoice_id=body.invoice_id,
        owner_id=owner_id,
        amount=body.amount,
        method=body.method,
        payment_date=body.payment_date,
        reference_number=body.reference_number,
        notes=body.notes,
        status=body.status,
    )


# ── GET /api/payments ────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[PaymentOut])
async def list_payments(
    status_filter: PaymentStatus | None = Query(None, alias="status"),
    method: PaymentMethod | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    payments, total = await ledger.list_payments(
        owner_id, status=status_filter, method=method, limit=limit, offset=offset
    )
    return PaginatedResponse[PaymentOut](
        items=[PaymentOut.model_validate(p) for p in payments],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=PaymentStats)
async def payment_stats(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.payment_stats(owner_id)


# ── Single payment ───────────────────────────────────────────

@router.patch("/{payment_id}", response_model=PaymentOut)
async def update_payment(
    payment_id: str,
    body: PaymentUpdate,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.update_payment(
        payment_id, owner_id, body.model_dump(exclude_unset=True)
    )


@router.delete("/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment(
    payment_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    await ledger.delete_payment(payment_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{payment_id}/complete", response_model=PaymentOut)
async def complete_payment(
    payment_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.complete_payment(payment_id, owner_id)


@router.post("/{payment_id}/fail", response_model=PaymentOut)
async def fail_payment(
    payment_id: str,
    body: PaymentFailIn | None = None,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.fail_payment(payment_id, owner_id, body.reason if body else None)
