from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import TYPE_CHECKING, Optional

from models import PaymentType

if TYPE_CHECKING:  # pragma: no cover
    from models import PaymentMethod


class CashbackInvariantError(RuntimeError):
    """Computed cashback/net pair would violate the expense constraints."""


@dataclass(frozen=True)
class CashbackResult:
    cashback_amount: int
    amount_net: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cashback_ceiling(amount: int) -> int:
    """Largest whole amount that still satisfies ``cashback <= amount * 0.1``."""
    return amount // 10


def compute_cashback(
    amount: int,
    payment_type: PaymentType,
    cashback_percentage: Optional[Decimal],
) -> CashbackResult:
    """
    Server-side cashback for a gross ``amount`` paid with the given method.

    Only credit cards with a configured rate earn cashback. The rate is a
    percentage with up to two decimal places and is rounded half-up to a whole
    currency unit, then capped at the 10% ceiling.
    """
    if amount < 0:
        raise ValueError("Amount must be non-negative")

    cashback = 0
    if payment_type == PaymentType.credit_card and cashback_percentage is not None:
        rate = Decimal(cashback_percentage)
        cashback = round_half_up(Decimal(amount) * rate / Decimal("100"))
        cashback = max(0, min(cashback, cashback_ceiling(amount)))
    return CashbackResult(cashback_amount=cashback, amount_net=amount - cashback)


def payment_method_cashback(amount: int, payment_method: "PaymentMethod") -> CashbackResult:
    return compute_cashback(
        amount, payment_method.type, payment_method.cashback_percentage
    )


def ensure_expense_invariants(amount: int, cashback_amount: int, amount_net: int) -> None:
    if amount < 0 or cashback_amount < 0 or amount_net < 0:
        raise CashbackInvariantError(
            f"Negative money value: amount={amount} cashback={cashback_amount} net={amount_net}"
        )
    if amount_net != amount - cashback_amount:
        raise CashbackInvariantError(
            f"Net mismatch: amount={amount} cashback={cashback_amount} net={amount_net}"
        )
    if cashback_amount * 10 > amount:
        raise CashbackInvariantError(
            f"Cashback above 10% ceiling: amount={amount} cashback={cashback_amount}"
        )
