"""Read-only financial summaries for the dashboard."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from packages.reimbursement_common import RequestStatus, StatusSummary, ValidationError

from .repositories import ReimbursementRepository


def month_window(month: int, year: int) -> Tuple[datetime, datetime]:
    """Return the half-open UTC range covering ``month`` of ``year``."""

    month, year = int(month), int(year)
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12.")
    year_window(year)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def year_window(year: int) -> Tuple[datetime, datetime]:
    """Return the half-open UTC range covering ``year``."""

    if not 1 <= int(year) < 9999:
        raise ValidationError("Year is out of range.")
    return (
        datetime(int(year), 1, 1, tzinfo=timezone.utc),
        datetime(int(year) + 1, 1, 1, tzinfo=timezone.utc),
    )


class AggregationReporter:
    """Sums request totals by the calendar period of their submission.

    By default every status counts, matching what the dashboard has always
    shown. Pass ``statuses`` to restrict the figure, for example to
    approved and paid requests only.
    """

    def __init__(self, repository: ReimbursementRepository):
        self._repository = repository

    def sum_by_month(
        self,
        month: int,
        year: int,
        statuses: Optional[Iterable[RequestStatus]] = None,
    ) -> Decimal:
        start, end = month_window(month, year)
        return self._repository.sum_submitted_between(start, end, statuses)

    def sum_by_year(
        self, year: int, statuses: Optional[Iterable[RequestStatus]] = None
    ) -> Decimal:
        start, end = year_window(year)
        return self._repository.sum_submitted_between(start, end, statuses)

    def status_summary(self, user_id: Optional[str] = None) -> StatusSummary:
        return self._repository.status_summary(user_id)
