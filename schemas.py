import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from models import PaymentType

MAX_EXPENSE_AMOUNT = 100_000_000
# Income and budgets; keeps sums inside a 32-bit INTEGER column.
MAX_MONEY = 2_000_000_000
MAX_ID = 2_147_483_647
MAX_PAGE = 1_000_000
BULK_DELETE_LIMIT = 100

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: dt.date
    merchant: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., ge=0, le=MAX_EXPENSE_AMOUNT)
    category_id: int = Field(..., ge=1, le=MAX_ID)
    payment_method_id: int = Field(..., ge=1, le=MAX_ID)

    @field_validator("merchant")
    @classmethod
    def _strip_merchant(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Merchant is required")
        return value


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: Optional[dt.date] = None
    merchant: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[int] = Field(default=None, ge=0, le=MAX_EXPENSE_AMOUNT)
    category_id: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    payment_method_id: Optional[int] = Field(default=None, ge=1, le=MAX_ID)


class ExpenseQuery(BaseModel):
    category_id: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    payment_method_id: Optional[int] = Field(default=None, ge=1, le=MAX_ID)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    sort_by: Literal["date", "merchant", "category", "payment", "amount"] = "date"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1, le=MAX_PAGE)
    limit: int = Field(default=50, ge=1, le=100)


class BulkDeleteIn(BaseModel):
    ids: list[Annotated[int, Field(ge=1, le=MAX_ID)]] = Field(
        ..., min_length=1, max_length=BULK_DELETE_LIMIT
    )


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    monthly_budget: Optional[int] = Field(default=None, ge=0, le=MAX_MONEY)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    monthly_budget: Optional[int] = Field(default=None, ge=0, le=MAX_MONEY)


class PaymentMethodIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: PaymentType
    cashback_percentage: Optional[Decimal] = Field(
        default=None, ge=0, le=10, max_digits=4, decimal_places=2
    )
    is_default: bool = False

    @model_validator(mode="after")
    def _cashback_only_for_credit_cards(self) -> "PaymentMethodIn":
        if self.type == PaymentType.credit_card:
            if self.cashback_percentage is None:
                raise ValueError("Credit cards require a cashback percentage")
        elif self.cashback_percentage is not None:
            raise ValueError("Only credit cards can have a cashback percentage")
        return self


class PaymentMethodUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    cashback_percentage: Optional[Decimal] = Field(
        default=None, ge=0, le=10, max_digits=4, decimal_places=2
    )
    is_default: Optional[bool] = None


class IncomeIn(BaseModel):
    month: str = Field(..., pattern=MONTH_PATTERN)
    amount: int = Field(..., ge=0, le=MAX_MONEY)
    source: Optional[str] = Field(default=None, max_length=255)


class IncomeUpdate(BaseModel):
    amount: Optional[int] = Field(default=None, ge=0, le=MAX_MONEY)
    source: Optional[str] = Field(default=None, max_length=255)


class SettingsUpdate(BaseModel):
    billing_cycle_start_day: Optional[int] = Field(default=None, ge=1, le=31)
    # 0 = end of month
    billing_cycle_end_day: Optional[int] = Field(default=None, ge=0, le=31)


class SummaryQuery(BaseModel):
    month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None


class ImportRow(BaseModel):
    date: dt.date
    merchant: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., ge=0, le=MAX_EXPENSE_AMOUNT)
    category: str = Field(..., min_length=1)
    payment: str = Field(..., min_length=1)


M = TypeVar("M", bound=BaseModel)


@dataclass
class ValidationResult(Generic[M]):
    ok: bool
    value: Optional[M] = None
    errors: list[dict[str, str]] = field(default_factory=list)


def validate(model: type[M], payload: Any) -> ValidationResult[M]:
    """
    Validate raw request data against ``model``.

    Rejections are reported as field errors on the result rather than raised,
    so callers branch on ``result.ok``.
    """
    if not isinstance(payload, dict):
        return ValidationResult(
            ok=False, errors=[{"field": "body", "message": "Expected an object"}]
        )
    try:
        value = model.model_validate(payload)
    except ValidationError as exc:
        return ValidationResult(ok=False, errors=_field_errors(exc))
    return ValidationResult(ok=True, value=value)


def _field_errors(exc: ValidationError) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "body"
        errors.append({"field": loc, "message": err.get("msg", "Invalid value")})
    return errors
