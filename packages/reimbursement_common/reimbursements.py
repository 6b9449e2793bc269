"""Reimbursement domain models and the item ledger.

These dataclasses provide a shared representation of reimbursement requests
and their line items. They intentionally avoid persistence concerns so the
models can be used from the Flask service, scripts, or tests alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError

CENT = Decimal("0.01")
# Largest amount for one item or one request; the cent value stays far below
# the signed 64-bit column limit even when many requests are summed.
MAX_AMOUNT = Decimal("999999999999.99")


class RequestStatus(str, Enum):
    """Approval workflow status of a reimbursement request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"

    @classmethod
    def parse(cls, value: Any) -> "RequestStatus":
        """Return the status matching ``value`` or raise :class:`ValidationError`."""

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            allowed = ", ".join(status.value for status in cls)
            raise ValidationError(
                f"Unknown status {value!r}; expected one of {allowed}."
            ) from None


@dataclass(slots=True)
class ItemDraft:
    """Validated line item that has not been persisted yet."""

    description: str
    amount: Decimal
    category: str
    expense_date: date
    receipt_reference: Optional[str] = None


@dataclass(slots=True)
class ReimbursementItem:
    """Single expense line item belonging to a request."""

    request_id: str
    description: str
    amount: Decimal
    category: str
    expense_date: date
    receipt_reference: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class ReimbursementFile:
    """Metadata for a receipt file stored by the file-storage collaborator."""

    request_id: str
    file_name: str
    file_path: str
    file_size: int
    mime_type: Optional[str] = None
    item_id: Optional[int] = None
    uploaded_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(slots=True)
class ReimbursementRequest:
    """An employee's reimbursement claim with its line items."""

    user_id: str
    title: str
    description: str
    status: RequestStatus
    submitted_at: datetime
    id: Optional[str] = None
    subtitle: str = ""
    expense_date: Optional[date] = None
    total_amount: Decimal = field(default_factory=Decimal)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None
    items: List[ReimbursementItem] = field(default_factory=list)
    files: List[ReimbursementFile] = field(default_factory=list)

    def computed_total(self) -> Decimal:
        """Recompute the total from the current items."""

        return total(self.items)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-ready representation including items and files."""

        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "expense_date": self.expense_date.isoformat() if self.expense_date else None,
            "status": self.status.value,
            "total_amount": str(self.total_amount),
            "submitted_at": self.submitted_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "processed_by": self.processed_by,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "items": [
                {
                    "id": item.id,
                    "description": item.description,
                    "amount": str(item.amount),
                    "category": item.category,
                    "date": item.expense_date.isoformat(),
                    "receipt_reference": item.receipt_reference,
                }
                for item in self.items
            ],
            "files": [
                {
                    "id": stored.id,
                    "item_id": stored.item_id,
                    "file_name": stored.file_name,
                    "file_path": stored.file_path,
                    "file_size": stored.file_size,
                    "mime_type": stored.mime_type,
                    "uploaded_at": stored.uploaded_at.isoformat()
                    if stored.uploaded_at
                    else None,
                }
                for stored in self.files
            ],
        }


@dataclass(slots=True)
class StatusChange:
    """One entry of a request's transition history."""

    request_id: str
    from_status: RequestStatus
    to_status: RequestStatus
    actor_id: str
    changed_at: datetime
    kind: str = "transition"
    notes: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class StatusSummary:
    """Request counts per status plus the overall claimed amount."""

    total: int
    counts: Dict[str, int]
    total_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"total": self.total}
        payload.update(self.counts)
        payload["total_amount"] = str(self.total_amount)
        return payload


def parse_amount(value: Any) -> Decimal:
    """Coerce ``value`` into a positive, finite amount with at most two decimals.

    Raises:
        ValidationError: If the value is not a number, is not finite, is not
            positive, exceeds :data:`MAX_AMOUNT`, or carries sub-cent
            precision.
    """

    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount must be a valid number.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a valid number.") from None
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number.")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Amount cannot exceed {MAX_AMOUNT:,}.")
    if amount != amount.quantize(CENT):
        raise ValidationError("Amount cannot have more than two decimal places.")
    return amount


def to_minor_units(amount: Decimal) -> int:
    """Return ``amount`` expressed in hundredths, e.g. ``12.34`` -> ``1234``."""

    return int((amount * 100).to_integral_value())


def from_minor_units(value: int | None) -> Decimal:
    """Inverse of :func:`to_minor_units`."""

    return (Decimal(value or 0) / Decimal(100)).quantize(CENT)


def total(items: Iterable[ItemDraft | ReimbursementItem]) -> Decimal:
    """Sum the amounts of ``items``.

    This is the only place totals are computed; the stored request total is
    always written from this value.
    """

    return sum((item.amount for item in items), Decimal()).quantize(CENT)


def group_items_by_category(
    items: Iterable[ItemDraft | ReimbursementItem],
) -> Dict[str, Decimal]:
    """Return total spend per category for the provided items."""

    totals: Dict[str, Decimal] = {}
    for item in items:
        totals.setdefault(item.category, Decimal())
        totals[item.category] += item.amount
    return totals


def _clean_text(value: Any, label: str, errors: List[str]) -> Optional[str]:
    """Strip a text field, recording an error when it is not text."""

    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append(f"{label} must be text.")
        return None
    return value.strip()


class ItemLedger:
    """Stages the line items of a single request and computes its total.

    The ledger only validates and holds drafts in memory; persisting them is
    the repository's job.
    """

    def __init__(self, items: Iterable[ItemDraft] = ()):
        self._items: List[ItemDraft] = []
        for draft in items:
            self.add_item(
                draft.description,
                draft.amount,
                draft.category,
                draft.expense_date,
                draft.receipt_reference,
            )

    def add_item(
        self,
        description: str,
        amount: Any,
        category: str,
        expense_date: date,
        receipt_reference: Optional[str] = None,
    ) -> ItemDraft:
        """Validate and append a line item, returning the staged draft."""

        errors: List[str] = []
        description = _clean_text(description, "Description", errors)
        category = _clean_text(category, "Category", errors)
        receipt_reference = _clean_text(receipt_reference, "Receipt reference", errors)
        if description is not None and not description:
            errors.append("Description is required.")
        if category is not None and not category:
            errors.append("Category is required.")
        try:
            parsed_amount = parse_amount(amount)
        except ValidationError as exc:
            errors.extend(exc.errors)
            parsed_amount = Decimal()
        else:
            if self.total() + parsed_amount > MAX_AMOUNT:
                errors.append(f"Request total cannot exceed {MAX_AMOUNT:,}.")
        if isinstance(expense_date, datetime) or not isinstance(expense_date, date):
            errors.append("Expense date is required and must be a calendar date.")
        if errors:
            raise ValidationError(errors)

        draft = ItemDraft(
            description=description,
            amount=parsed_amount,
            category=category,
            expense_date=expense_date,
            receipt_reference=(receipt_reference or None),
        )
        self._items.append(draft)
        return draft

    @property
    def items(self) -> List[ItemDraft]:
        return list(self._items)

    def total(self) -> Decimal:
        return total(self._items)

    def __len__(self) -> int:
        return len(self._items)
