"""Invoice endpoints.

Endpoints:
    POST   /api/invoices/preview          Compute totals without saving
    POST   /api/invoices                  Create a draft invoice (uses quota)
    GET    /api/invoices                  List invoices (filters + pagination)
    GET    /api/invoices/overdue          Unpaid invoices past their due date
    GET    /api/invoices/stats            Counts and amounts by status
    GET    /api/invoices/{id}             Invoice detail
    PATCH  /api/invoices/{id}             Partial update (recomputes totals)
    DELETE /api/invoices/{id}             Delete a non-paid invoice
    POST   /api/invoices/{id}/status      Request a status transition
    POST   /api/invoices/{id}/send        draft → sent
    POST   /api/invoices/{id}/mark-paid   → paid (books any balance)
    GET    /api/invoices/{id}/view        Public view link (no auth)
    GET    /api/invoices/{id}/payments    Payments recorded on the invoice
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, Response, status

from invoicer.auth.deps import get_current_owner
from invoicer.schemas.common import PaginatedResponse
from invoicer.schemas.invoice import (
    InvoiceCreate,
    InvoiceOut,
    InvoiceStats,
    InvoiceUpdate,
    StatusTransitionIn,
    TotalsOut,
    TotalsPreviewIn,
)
from invoicer.schemas.payment import PaymentOut
from invoicer.services.ledger import LedgerService, get_ledger

router = APIRouter()


# ── POST /api/invoices/preview ───────────────────────────────

@router.post("/preview", response_model=TotalsOut)
async def preview_totals(
    body: TotalsPreviewIn,
    _owner_id: str = Depends(get_current_owner),
):
    totals = LedgerService.preview_totals(body.items, body.discount_amount, body.tax_rate)
    return TotalsOut(
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        total=totals.total,
        line_amounts=totals.line_amounts,
    )


# ── POST /api/invoices ───────────────────────────────────────

@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    body: InvoiceCreate,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    invoice = await ledger.create_invoice(
        owner_id=owner_id,
        client_id=body.client_id,
        items=body.items,
        tax_rate=body.tax_rate,
        discount_amount=body.discount_amount,
        issue_date=body.issue_date,
        due_date=body.due_date,
        currency=body.currency,
        notes=body.notes,
        terms=body.terms,
    )
    return InvoiceOut.from_invoice(invoice)


# ── GET /api/invoices ────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[InvoiceOut])
async def list_invoices(
    status_filter: str | None = Query(
        None, alias="status",
        pattern="^(draft|sent|viewed|paid|overdue)$",
    ),
    client_id: str | None = Query(None),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    invoices, total = await ledger.list_invoices(
        owner_id,
        status=status_filter,
        client_id=client_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse[InvoiceOut](
        items=[InvoiceOut.from_invoice(i) for i in invoices],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/overdue", response_model=list[InvoiceOut])
async def list_overdue_invoices(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return [InvoiceOut.from_invoice(i) for i in await ledger.list_overdue_invoices(owner_id)]


@router.get("/stats", response_model=InvoiceStats)
async def invoice_stats(
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.invoice_stats(owner_id)


# ── Single invoice ───────────────────────────────────────────

@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return InvoiceOut.from_invoice(await ledger.get_invoice(invoice_id, owner_id))


@router.patch("/{invoice_id}", response_model=InvoiceOut)
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdate,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    invoice = await ledger.update_invoice(
        invoice_id, owner_id, body.model_dump(exclude_unset=True)
    )
    return InvoiceOut.from_invoice(invoice)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    await ledger.delete_invoice(invoice_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Status transitions ───────────────────────────────────────

@router.post("/{invoice_id}/status", response_model=InvoiceOut)
async def transition_status(
    invoice_id: str,
    body: StatusTransitionIn,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    invoice = await ledger.transition_status(invoice_id, owner_id, body.status)
    return InvoiceOut.from_invoice(invoice)


@router.post("/{invoice_id}/send", response_model=InvoiceOut)
async def send_invoice(
    invoice_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    # Email delivery is handled downstream; the ledger only records the send.
    return InvoiceOut.from_invoice(await ledger.send_invoice(invoice_id, owner_id))


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceOut)
async def mark_paid(
    invoice_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return InvoiceOut.from_invoice(await ledger.mark_paid(invoice_id, owner_id))


@router.get("/{invoice_id}/view", response_model=InvoiceOut)
async def view_invoice(
    invoice_id: str,
    ledger: LedgerService = Depends(get_ledger),
):
    """Client-facing link: records the first view, no authentication."""
    return InvoiceOut.from_invoice(await ledger.mark_viewed(invoice_id))


@router.get("/{invoice_id}/payments", response_model=list[PaymentOut])
async def list_invoice_payments(
    invoice_id: str,
    owner_id: str = Depends(get_current_owner),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.list_invoice_payments(invoice_id, owner_id)
