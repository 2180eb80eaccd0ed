"""
Core Record Models for Cashbook

These models define the schemas for the two record collections kept on the
device (customers and transactions) and the derived summary statistics.

DESIGN DECISION: Records are persisted as JSON with camelCase keys and
amounts written as plain numbers, so the same documents stay readable by
every client that syncs through the cloud copy. Inside Python the money
fields are Decimals.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def to_storage_precision(value: datetime) -> datetime:
    """
    Aware UTC datetime cut to the millisecond precision records are stored at.

    Naive values are taken as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime, at storage precision."""
    return to_storage_precision(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


_last_issued_id = 0


def new_record_id() -> str:
    """
    Issue a time-derived record ID.

    IDs are millisecond timestamps, bumped past the previously issued value
    so two records created within the same clock tick never collide.
    """
    global _last_issued_id
    candidate = time.time_ns() // 1_000_000
    if candidate <= _last_issued_id:
        candidate = _last_issued_id + 1
    _last_issued_id = candidate
    return str(candidate)


Money = Annotated[
    Decimal,
    PlainSerializer(float, return_type=float, when_used="json"),
]

Timestamp = Annotated[
    datetime,
    AfterValidator(to_storage_precision),
    PlainSerializer(format_timestamp, return_type=str, when_used="json"),
]


# =============================================================================
# ENUMS
# =============================================================================

# Spellings written by older app versions
_LEGACY_TYPE_ALIASES = {
    "credit": "income",
    "debit": "expense",
}


class TransactionType(str, Enum):
    """
    Direction of a transaction.

    Only the canonical values are ever written. The legacy spellings
    ``credit`` and ``debit`` are accepted on read and mapped here.
    """
    INCOME = "income"
    EXPENSE = "expense"

    @classmethod
    def parse(cls, value: Any) -> "TransactionType":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            return cls(_LEGACY_TYPE_ALIASES.get(normalized, normalized))
        raise ValueError(f"Unknown transaction type: {value!r}")

    @property
    def sign(self) -> int:
        return 1 if self is TransactionType.INCOME else -1

    @property
    def default_description(self) -> str:
        return "Income" if self is TransactionType.INCOME else "Expense"


# =============================================================================
# RECORDS
# =============================================================================

class RecordModel(BaseModel):
    """
    Base for persisted records.

    Unknown fields are kept so data written by newer clients survives a
    round trip through this one.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="allow",
    )

    @field_validator("id", mode="before", check_fields=False)
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        # Older clients sometimes stored numeric IDs
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    def to_record(self) -> dict[str, Any]:
        """Serialize to the JSON-ready storage form."""
        return self.model_dump(mode="json", by_alias=True)


class Customer(RecordModel):
    """
    A person or business the user keeps an account with.

    ``balance`` is derived: the signed sum of the customer's linked
    transactions. Positive means money came in from the customer.
    """

    id: str = Field(
        default_factory=new_record_id,
        min_length=1,
        description="Unique customer ID"
    )
    name: str = Field(
        ...,
        min_length=1,
        description="Display name"
    )
    number: Optional[str] = Field(
        default=None,
        description="Optional contact number"
    )
    balance: Money = Field(
        default=Decimal("0"),
        description="Running total of linked transactions"
    )
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)

    @field_validator("balance", mode="before")
    @classmethod
    def default_missing_balance(cls, v: Any) -> Any:
        if v is None or v == "":
            return Decimal("0")
        return v


class Transaction(RecordModel):
    """
    A single cash-in or cash-out entry.

    The amount is always a non-negative magnitude; direction is carried by
    ``type``. A transaction may optionally be linked to a customer.
    """

    id: str = Field(
        default_factory=new_record_id,
        min_length=1,
        description="Unique transaction ID"
    )
    amount: Money = Field(
        ...,
        ge=0,
        description="Unsigned amount"
    )
    type: TransactionType = Field(
        ...,
        description="income or expense"
    )
    description: str = Field(
        default="",
        description="Free text; defaults to a label derived from type"
    )
    customer_id: Optional[str] = Field(
        default=None,
        description="Linked customer, if any"
    )
    customer_name: Optional[str] = Field(
        default=None,
        description="Customer name copied at creation time"
    )
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Optional[Timestamp] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> TransactionType:
        return TransactionType.parse(v)

    @field_validator("customer_id", mode="before")
    @classmethod
    def normalize_customer_id(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @model_validator(mode="after")
    def fill_default_description(self) -> "Transaction":
        if not self.description:
            self.description = self.type.default_description
        return self

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign implied by the transaction type."""
        return self.amount * self.type.sign


# =============================================================================
# AGGREGATES
# =============================================================================

class Stats(BaseModel):
    """
    Dashboard totals, recomputed from a full scan on every request.

    NOTE: total_balance (income minus expenses over ALL transactions) and
    total_customer_balance (sum of customer balances, linked only) are
    different numbers.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_income: Money = Decimal("0")
    total_expenses: Money = Decimal("0")
    total_balance: Money = Decimal("0")
    total_customer_balance: Money = Decimal("0")
    total_customers: int = 0
    total_transactions: int = 0
