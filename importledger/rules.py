"""Field rules shared by every import type.

A rule takes the value produced by the previous rule (the trimmed cell
text for the first one) and returns either the converted value or a
message explaining why the cell is rejected.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re

from importledger.schemas import StudentRef


# Thousands separators, currency codes and symbols are dropped before parsing.
# "1.500,00" style amounts are misread; callers must supply "." decimals.
AMOUNT_NOISE = re.compile(r"[^0-9.-]")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
)
DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
)


@dataclass(frozen=True)
class RuleResult:
    value: object = None
    message: str | None = None


@dataclass
class ValidationContext:
    students: dict[str, StudentRef] = field(default_factory=dict)
    today: date = field(default_factory=date.today)

    def find_student(self, admission_number: str) -> StudentRef | None:
        return self.students.get(admission_number.strip().upper())


Rule = Callable[[object, ValidationContext], RuleResult]


def parse_amount(text: str) -> Decimal | None:
    cleaned = AMOUNT_NOISE.sub("", text)
    if not cleaned:
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def to_stored_amount(amount: Decimal) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_flexible_date(text: str) -> date | None:
    text = text.strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def one_of(options: Sequence[str]) -> Rule:
    allowed = [option.lower() for option in options]
    message = f"Must be one of: {', '.join(options)}"

    def rule(value: object, context: ValidationContext) -> RuleResult:
        normalized = str(value).strip().lower()
        if normalized not in allowed:
            return RuleResult(message=message)
        return RuleResult(value=normalized)

    return rule


def positive_amount(value: object, context: ValidationContext) -> RuleResult:
    amount = parse_amount(str(value))
    if amount is None or amount <= 0:
        return RuleResult(message="Amount must be a positive number")
    return RuleResult(value=amount)


def statement_amount(value: object, context: ValidationContext) -> RuleResult:
    # Statements list debits as negatives; only the magnitude is reconciled.
    amount = parse_amount(str(value))
    if amount is None:
        return RuleResult(message="Amount must be a number")
    if amount == 0:
        return RuleResult(message="Amount must not be zero")
    return RuleResult(value=abs(amount))


def flexible_date(*, allow_future: bool = True) -> Rule:
    def rule(value: object, context: ValidationContext) -> RuleResult:
        parsed = parse_flexible_date(str(value))
        if parsed is None:
            return RuleResult(message="Invalid date format (use YYYY-MM-DD or DD-MM-YYYY)")
        if not allow_future and parsed > context.today:
            return RuleResult(message="Date cannot be in the future")
        return RuleResult(value=parsed)

    return rule


def student_lookup(value: object, context: ValidationContext) -> RuleResult:
    student = context.find_student(str(value))
    if student is None:
        return RuleResult(message="Student not found")
    return RuleResult(value=student)


def free_text(max_length: int) -> Rule:
    def rule(value: object, context: ValidationContext) -> RuleResult:
        text = str(value).strip()
        if len(text) > max_length:
            return RuleResult(message=f"Must be at most {max_length} characters")
        return RuleResult(value=text)

    return rule
