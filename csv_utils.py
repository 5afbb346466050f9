import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import Expense
from schemas import ImportRow

IMPORT_COLUMNS = ("Date", "Merchant", "Amount", "Category", "Payment")
DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d.%m.%Y")


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date format: {value}")


def parse_amount(value: str) -> int:
    """Whole currency units; thousands separators and symbols are ignored."""
    clean = value.strip()
    for token in ("₩", "$", "€", ",", " "):
        clean = clean.replace(token, "")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value}")
    try:
        whole = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        # Exponent too large for the decimal context, e.g. 1e999999.
        raise ValueError(f"Invalid amount: {value}") from exc
    if whole < 0:
        raise ValueError(f"Invalid amount: {value}")
    return whole


def parse_import_csv(content: str) -> tuple[list[tuple[int, ImportRow]], list[str], int]:
    """
    Parse an expense import file.

    Returns ``(rows, errors, total_rows)`` where each row keeps its 1-based
    position so later lookup failures can be reported against the same number.
    """
    reader = csv.DictReader(StringIO(content.lstrip("\ufeff")))
    rows: list[tuple[int, ImportRow]] = []
    errors: list[str] = []
    total = 0
    for idx, raw in enumerate(reader, start=1):
        total += 1
        missing = [col for col in IMPORT_COLUMNS if not (raw.get(col) or "").strip()]
        if missing:
            errors.append(f"Row {idx}: Missing required field: {missing[0]}")
            continue
        try:
            row = ImportRow(
                date=parse_date(raw["Date"]),
                merchant=raw["Merchant"].strip(),
                amount=parse_amount(raw["Amount"]),
                category=raw["Category"].strip(),
                payment=raw["Payment"].strip(),
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            errors.append(f"Row {idx}: {first.get('msg', 'Invalid value')}")
            continue
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        rows.append((idx, row))
    return rows, errors, total


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Merchant", "Amount", "Cashback", "Net", "Category", "Payment"]
    )
    for expense in expenses:
        writer.writerow(
            [
                expense.date.isoformat(),
                sanitize_csv_value(expense.merchant),
                expense.amount,
                expense.cashback_amount,
                expense.amount_net,
                sanitize_csv_value(expense.category.name if expense.category else ""),
                sanitize_csv_value(
                    expense.payment_method.name if expense.payment_method else ""
                ),
            ]
        )
    return output.getvalue()
