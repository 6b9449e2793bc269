"""HTTP routes for dashboard figures."""

from __future__ import annotations

from typing import List, Optional

from flask import Blueprint, Response, jsonify, request

from packages.reimbursement_common import (
    AuthorizationError,
    RequestStatus,
    ValidationError,
)

from .. import get_reporter
from ..forms import parse_period
from ..policies import admin_required, current_actor, login_required

reports_bp = Blueprint("reports", __name__, url_prefix="/reports")


def _status_filter() -> Optional[List[RequestStatus]]:
    """Return the statuses named by repeated ``?status=`` arguments, if any."""

    raw = [value for value in request.args.getlist("status") if value.strip()]
    if not raw:
        return None
    return [RequestStatus.parse(value) for value in raw]


def _status_names(statuses: Optional[List[RequestStatus]]) -> Optional[List[str]]:
    return [status.value for status in statuses] if statuses is not None else None


@reports_bp.get("/month")
@admin_required
def month_total() -> Response:
    """Sum request totals submitted in a calendar month."""

    period, errors = parse_period(request.args, need_month=True)
    if errors or period is None:
        raise ValidationError(errors)
    month, year = period
    statuses = _status_filter()
    amount = get_reporter().sum_by_month(month, year, statuses)
    return jsonify(
        month=month,
        year=year,
        statuses=_status_names(statuses),
        total_amount=str(amount),
    )


@reports_bp.get("/year")
@admin_required
def year_total() -> Response:
    """Sum request totals submitted in a calendar year."""

    period, errors = parse_period(request.args, need_month=False)
    if errors or period is None:
        raise ValidationError(errors)
    _, year = period
    statuses = _status_filter()
    amount = get_reporter().sum_by_year(year, statuses)
    return jsonify(year=year, statuses=_status_names(statuses), total_amount=str(amount))


@reports_bp.get("/summary")
@login_required
def status_summary() -> Response:
    """Count requests per status for the caller, or for anyone if admin."""

    actor = current_actor()
    owner = (request.args.get("owner") or "").strip() or None
    if not actor.is_admin:
        if owner is not None and owner != actor.actor_id:
            raise AuthorizationError("You can only summarise your own requests.")
        owner = actor.actor_id
    return jsonify(get_reporter().status_summary(owner).to_dict())
