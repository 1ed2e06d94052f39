"""Validated worker rows and the payroll CSV format."""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from usdc_payroll.amounts import format_amount, is_valid_amount, sum_amounts
from usdc_payroll.chains import SupportedChain
from usdc_payroll.errors import ValidationError

CSV_COLUMNS = ("name", "email", "amount", "chain")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CSV_TEMPLATE = (
    "name,email,amount,chain\n"
    "John Doe,john@example.com,100.50,ethereum\n"
    "Jane Smith,jane@example.com,250.00,base\n"
    "Bob Johnson,bob@example.com,75.25,arbitrum\n"
)


class WorkerRow(BaseModel):
    """One worker payment line: who, how much, on which chain."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(max_length=320)
    amount: str
    chain: SupportedChain

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value.lower()

    @field_validator("amount")
    @classmethod
    def _check_amount(cls, value: str) -> str:
        if not is_valid_amount(value):
            raise ValueError("Amount must be a positive number with at most 6 decimal places")
        return value

    @field_validator("chain", mode="before")
    @classmethod
    def _normalize_chain(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def decimal_amount(self) -> Decimal:
        return Decimal(self.amount)


@dataclass(frozen=True)
class BatchSummary:
    """Totals for a batch of worker rows."""

    total_workers: int
    total_amount: str
    chains: list[str]


def summarize(rows: list[WorkerRow]) -> BatchSummary:
    return BatchSummary(
        total_workers=len(rows),
        total_amount=format_amount(sum_amounts(r.amount for r in rows)),
        chains=sorted({r.chain.value for r in rows}),
    )


def _row_errors(line: int, exc: PydanticValidationError) -> list[dict[str, Any]]:
    errors = []
    for error in exc.errors():
        field = ".".join(str(p) for p in error["loc"]) or "row"
        message = error["msg"].removeprefix("Value error, ")
        errors.append({"row": line, "field": field, "message": message})
    return errors


def parse_payroll_csv(content: bytes | str) -> tuple[list[WorkerRow], BatchSummary]:
    """Parse and validate an uploaded payroll CSV.

    Header names are matched case-insensitively; blank lines are skipped.
    All row problems are collected and reported together.

    Raises:
        ValidationError: with ``details`` listing ``{row, field, message}``.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError("CSV file must be UTF-8 encoded") from None

    reader = csv.DictReader(io.StringIO(content))
    if reader.fieldnames is None:
        raise ValidationError("CSV file is empty")
    reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
    missing = [c for c in CSV_COLUMNS if c not in reader.fieldnames]
    if missing:
        raise ValidationError(
            f"CSV is missing required column(s): {', '.join(missing)}",
            details=[{"row": 1, "field": c, "message": "Missing column"} for c in missing],
        )

    rows: list[WorkerRow] = []
    errors: list[dict[str, Any]] = []
    for record in reader:
        values = {c: (record.get(c) or "").strip() for c in CSV_COLUMNS}
        if not any(values.values()):
            continue
        try:
            rows.append(WorkerRow.model_validate(values))
        except PydanticValidationError as exc:
            errors.extend(_row_errors(reader.line_num, exc))

    if errors:
        raise ValidationError(f"CSV validation failed with {len(errors)} error(s)", details=errors)
    if not rows:
        raise ValidationError("CSV contains no worker rows")
    return rows, summarize(rows)
