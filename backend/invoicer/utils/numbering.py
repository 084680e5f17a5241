"""Invoice number generation.

Numbers are sequential per owner and per day:

  INV-{date}-{seq:3}   e.g. INV-20261016-004

The sequence continues after the highest number already issued today, so
deleting an invoice never causes a later one to reuse its number.  Callers
must hold the owner's subscription row (the quota reservation does this)
so two creates for one owner cannot pick the same number.
"""

import re
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from invoicer.models.invoice import Invoice
from invoicer.utils.clock import today

DEFAULT_FORMAT = "INV-{date}-{seq:3}"


def _build_prefix(fmt: str, today_str: str) -> str:
    """Everything before {seq:N}."""
    prefix = fmt.replace("{date}", today_str)
    return re.sub(r"\{seq:\d+\}.*$", "", prefix)


async def _highest_sequence(db: AsyncSession, owner_id: str, prefix: str) -> int:
    result = await db.execute(
        select(Invoice.invoice_number).where(
            Invoice.owner_id == owner_id,
            Invoice.invoice_number.like(f"{prefix}%"),
        )
    )
    highest = 0
    for number in result.scalars().all():
        tail = number[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return highest


async def generate_invoice_number(
    db: AsyncSession,
    owner_id: str,
    on: date | None = None,
    fmt: str = DEFAULT_FORMAT,
) -> str:
    """Generate the next invoice number for an owner.

    Args:
        db: Session inside the create transaction
        owner_id: Account the invoice belongs to
        on: Date stamped into the number (defaults to today, UTC)
        fmt: Format template

    Returns:
        Generated number, e.g. "INV-20261016-001"
    """
    today_str = (on or today()).strftime("%Y%m%d")
    prefix = _build_prefix(fmt, today_str)

    seq_num = await _highest_sequence(db, owner_id, prefix) + 1

    seq_match = re.search(r"\{seq:(\d+)\}", fmt)
    seq_width = int(seq_match.group(1)) if seq_match else 3

    code = fmt.replace("{date}", today_str)
    return re.sub(r"\{seq:\d+\}", f"{seq_num:0{seq_width}d}", code)
