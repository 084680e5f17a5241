"""Invoice totals calculator.

Pure: no database, no clock.  Used when an invoice is created or its
items/discount/tax change, and on its own for previews.

  line amount = round(quantity * rate, 2)      (each line rounded first)
  subtotal    = Σ line amounts
  tax_amount  = round((subtotal - discount) * tax_rate / 100, 2)
  total       = round(subtotal - discount + tax_amount, 2)

All rounding is ROUND_HALF_UP to cents.  Inputs must fit the columns they
are stored in (quantity and rate to 4 places, tax rate to 2), so a later
recompute from the stored row gives the same totals.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from invoicer.middleware.exceptions import InvalidDiscount, InvalidLineItem, InvalidTaxRate

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

LINE_PLACES = 4
TAX_RATE_PLACES = 2


def to_money(value) -> Decimal:
    """Coerce to a Decimal rounded half-up to two places."""
    try:
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidLineItem(f"Not a valid amount: {value!r}") from exc


def _to_decimal(value, name: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidLineItem(f"{name} is not a number: {value!r}") from exc
    if not d.is_finite():
        raise InvalidLineItem(f"{name} must be finite")
    return d


def _places(d: Decimal) -> int:
    exponent = d.normalize().as_tuple().exponent
    return -exponent if exponent < 0 else 0


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    rate: Decimal


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    line_amounts: list[Decimal] = field(default_factory=list)


def _as_line(item) -> LineItem:
    """Accept LineItem, schema objects or plain dicts."""
    if isinstance(item, dict):
        return LineItem(
            description=item.get("description", ""),
            quantity=item.get("quantity"),
            rate=item.get("rate"),
        )
    return LineItem(
        description=getattr(item, "description", ""),
        quantity=item.quantity,
        rate=item.rate,
    )


def calculate_totals(
    items: Iterable,
    discount_amount=ZERO,
    tax_rate=ZERO,
) -> Totals:
    """Compute subtotal, tax and total for an ordered list of line items.

    Raises:
        InvalidLineItem: empty list, quantity <= 0, rate < 0, or too many places
        InvalidDiscount: discount negative or greater than the subtotal
        InvalidTaxRate: tax rate outside 0..100 or finer than 0.01
    """
    lines = [_as_line(i) for i in items]
    if not lines:
        raise InvalidLineItem("An invoice needs at least one line item")

    line_amounts: list[Decimal] = []
    subtotal = ZERO
    for position, line in enumerate(lines, start=1):
        quantity = _to_decimal(line.quantity, f"Line {position} quantity")
        rate = _to_decimal(line.rate, f"Line {position} rate")
        if quantity <= 0:
            raise InvalidLineItem(f"Line {position}: quantity must be greater than 0")
        if rate < 0:
            raise InvalidLineItem(f"Line {position}: rate cannot be negative")
        if _places(quantity) > LINE_PLACES or _places(rate) > LINE_PLACES:
            raise InvalidLineItem(
                f"Line {position}: quantity and rate allow at most {LINE_PLACES} decimal places"
            )

        amount = (quantity * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        line_amounts.append(amount)
        subtotal += amount

    subtotal = subtotal.quantize(CENTS, rounding=ROUND_HALF_UP)

    try:
        discount = Decimal(str(discount_amount if discount_amount is not None else 0))
    except InvalidOperation as exc:
        raise InvalidDiscount(f"Discount is not a number: {discount_amount!r}") from exc
    if not discount.is_finite() or discount < 0:
        raise InvalidDiscount("Discount cannot be negative")
    discount = discount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if discount > subtotal:
        raise InvalidDiscount(
            f"Discount {discount} cannot exceed the subtotal {subtotal}"
        )

    try:
        rate_pct = Decimal(str(tax_rate if tax_rate is not None else 0))
    except InvalidOperation as exc:
        raise InvalidTaxRate(tax_rate) from exc
    if not rate_pct.is_finite() or rate_pct < 0 or rate_pct > HUNDRED:
        raise InvalidTaxRate(tax_rate)
    if _places(rate_pct) > TAX_RATE_PLACES:
        raise InvalidTaxRate(
            tax_rate, f"Tax rate allows at most {TAX_RATE_PLACES} decimal places, got {tax_rate}"
        )
    taxable = subtotal - discount
    tax_amount = (taxable * rate_pct / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)
    total = (taxable + tax_amount).quantize(CENTS, rounding=ROUND_HALF_UP)

    return Totals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total=total,
        line_amounts=line_amounts,
    )
