"""Payload parsing and validation helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Tuple

from packages.reimbursement_common import ItemDraft, ItemLedger, ValidationError


@dataclass(slots=True)
class RequestFormData:
    """Validated request submission returned by :func:`parse_request_payload`."""

    title: str
    subtitle: str
    description: str
    expense_date: Optional[date]
    items: List[ItemDraft] = field(default_factory=list)


DATE_INPUT_FORMAT = "%Y-%m-%d"


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        return None
    return datetime.strptime(raw, DATE_INPUT_FORMAT).date()


def parse_request_payload(
    payload: Mapping[str, Any],
) -> Tuple[Optional[RequestFormData], List[str]]:
    """Validate a request submission.

    Returns a tuple of ``(result, errors)``. ``result`` is ``None`` when
    validation fails. Items are validated through :class:`ItemLedger` so the
    rules match the ones the store applies.
    """

    errors: List[str] = []
    title = str(payload.get("title") or "").strip()
    subtitle = str(payload.get("subtitle") or "").strip()
    description = str(payload.get("description") or "").strip()
    if not title:
        errors.append("Request title is required.")
    try:
        expense_date = _parse_date(payload.get("expense_date"))
    except ValueError:
        errors.append("Request date must be YYYY-MM-DD.")
        expense_date = None

    raw_items = payload.get("items")
    ledger = ItemLedger()
    if not isinstance(raw_items, list) or not raw_items:
        errors.append("A request needs at least one item.")
    else:
        for index, raw in enumerate(raw_items, start=1):
            errors.extend(_stage_item(ledger, raw, index))

    if errors:
        return None, errors

    return (
        RequestFormData(
            title=title,
            subtitle=subtitle,
            description=description,
            expense_date=expense_date,
            items=ledger.items,
        ),
        [],
    )


def _stage_item(ledger: ItemLedger, raw: Any, index: int) -> List[str]:
    """Add one raw item to ``ledger`` and return its errors, if any."""

    if not isinstance(raw, Mapping):
        return [f"Item {index}: must be an object."]
    try:
        expense_date = _parse_date(raw.get("date", raw.get("expense_date")))
    except ValueError:
        return [f"Item {index}: Expense date must be YYYY-MM-DD."]
    try:
        ledger.add_item(
            raw.get("description", ""),
            raw.get("amount"),
            raw.get("category", ""),
            expense_date,
            raw.get("receipt_reference"),
        )
    except ValidationError as exc:
        return [f"Item {index}: {message}" for message in exc.errors]
    return []


def parse_notes(payload: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Return the optional ``notes`` field of a transition payload."""

    if not payload:
        return None
    notes = payload.get("notes")
    if notes is None:
        return None
    if not isinstance(notes, str):
        raise ValidationError("Notes must be text.")
    return notes.strip() or None


def parse_period(
    args: Mapping[str, Any], *, need_month: bool
) -> Tuple[Optional[Tuple[int, int]], List[str]]:
    """Parse ``month``/``year`` query arguments for the report endpoints."""

    errors: List[str] = []
    month = 1
    try:
        year = int(args.get("year", ""))
    except (TypeError, ValueError):
        errors.append("Year is required and must be a number.")
        year = 0
    if need_month:
        try:
            month = int(args.get("month", ""))
        except (TypeError, ValueError):
            errors.append("Month is required and must be a number.")
    if errors:
        return None, errors
    return (month, year), []
