"""HTTP routes for submitting and processing reimbursement requests."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from flask import Blueprint, Response, jsonify, request, send_file, url_for

from packages.reimbursement_common import (
    ReimbursementFile,
    RequestStatus,
    StatusChange,
    ValidationError,
)

from .. import get_service, get_state_machine
from ..forms import parse_notes, parse_request_payload
from ..policies import admin_required, current_actor, login_required
from ..services import build_preview, categories_for_select

requests_bp = Blueprint("requests", __name__)


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _file_payload(stored: ReimbursementFile) -> Dict[str, Any]:
    return {
        "id": stored.id,
        "request_id": stored.request_id,
        "item_id": stored.item_id,
        "file_name": stored.file_name,
        "file_path": stored.file_path,
        "file_size": stored.file_size,
        "mime_type": stored.mime_type,
        "uploaded_at": stored.uploaded_at.isoformat() if stored.uploaded_at else None,
    }


def _change_payload(change: StatusChange) -> Dict[str, Any]:
    return {
        "id": change.id,
        "from_status": change.from_status.value,
        "to_status": change.to_status.value,
        "actor_id": change.actor_id,
        "kind": change.kind,
        "notes": change.notes,
        "changed_at": change.changed_at.isoformat(),
    }


@requests_bp.post("/requests")
@login_required
def create_request() -> Response:
    """Submit a new request with its items."""

    form_data, errors = parse_request_payload(_json_body())
    if errors or form_data is None:
        raise ValidationError(errors)
    saved = get_service().submit(current_actor(), form_data)
    response = jsonify(saved.to_dict())
    response.status_code = 201
    response.headers["Location"] = url_for("requests.view_request", request_id=saved.id)
    return response


@requests_bp.get("/requests")
@login_required
def list_requests() -> Response:
    """List one owner's requests, or every request for administrators.

    ``?owner=`` lists by owner (callers may always list their own). Without
    it, administrators get every request, optionally filtered by ``?status=``,
    and employees get their own.
    """

    actor = current_actor()
    service = get_service()
    owner = (request.args.get("owner") or "").strip()
    if owner:
        results = service.list_for_owner(owner, actor)
    elif actor.is_admin:
        status = request.args.get("status")
        results = service.list_all(
            actor, RequestStatus.parse(status) if status else None
        )
    else:
        results = service.list_for_owner(actor.actor_id, actor)
    return jsonify([item.to_dict() for item in results])


@requests_bp.get("/requests/<request_id>")
@login_required
def view_request(request_id: str) -> Response:
    """Return a single request with its items and files."""

    return jsonify(get_service().get_for(request_id, current_actor()).to_dict())


@requests_bp.put("/requests/<request_id>")
@login_required
def update_request(request_id: str) -> Response:
    """Replace the metadata and items of the caller's pending request."""

    form_data, errors = parse_request_payload(_json_body())
    if errors or form_data is None:
        raise ValidationError(errors)
    saved = get_service().update_pending(request_id, current_actor(), form_data)
    return jsonify(saved.to_dict())


@requests_bp.delete("/requests/<request_id>")
@admin_required
def delete_request(request_id: str) -> Response:
    """Delete a request, its items, and its stored receipts."""

    get_service().delete(request_id, current_actor())
    return Response(status=204)


@requests_bp.post("/requests/<request_id>/<any(approve, reject, pay):action>")
@admin_required
def transition_request(request_id: str, action: str) -> Response:
    """Apply one of the normal approval transitions."""

    notes = parse_notes(_json_body())
    updated = get_state_machine().apply(action, request_id, current_actor(), notes)
    return jsonify(updated.to_dict())


@requests_bp.post("/requests/<request_id>/status")
@admin_required
def override_status(request_id: str) -> Response:
    """Force a status outside the normal flow to correct a mistake."""

    payload = _json_body()
    if "status" not in payload:
        raise ValidationError("Status is required.")
    updated = get_state_machine().set_status(
        request_id, payload["status"], current_actor(), parse_notes(payload)
    )
    return jsonify(updated.to_dict())


@requests_bp.get("/requests/<request_id>/history")
@admin_required
def request_history(request_id: str) -> Response:
    """Return the transition history, oldest first."""

    changes = get_state_machine().history(request_id, current_actor())
    return jsonify([_change_payload(change) for change in changes])


@requests_bp.get("/requests/<request_id>/preview")
@login_required
def preview_request(request_id: str) -> Response:
    """Return a plain-text rendering suitable for copying into email."""

    found = get_service().get_for(request_id, current_actor())
    return Response(build_preview(found), mimetype="text/plain")


@requests_bp.post("/requests/<request_id>/items/<int:item_id>/receipt")
@login_required
def attach_receipt(request_id: str, item_id: int) -> Response:
    """Upload a receipt for one item of a pending request.

    A storage failure answers ``503`` but the request itself stays saved.
    """

    result = get_service().attach_receipt(
        request_id, item_id, current_actor(), request.files.get("receipt")
    )
    if not result.ok:
        response = jsonify(
            error="receipt_upload_failed",
            message=f"{result.error} The request was saved without this receipt.",
            request_id=request_id,
            item_id=item_id,
        )
        response.status_code = 503
        return response
    response = jsonify(_file_payload(result.file))
    response.status_code = 201
    return response


@requests_bp.get("/receipts/<path:reference>")
@login_required
def get_receipt(reference: str) -> Response:
    """Serve a previously uploaded receipt."""

    path = get_service().receipt_path(reference, current_actor())
    return send_file(path, as_attachment=True)


@requests_bp.get("/categories")
def list_categories() -> Response:
    """Return the categories offered when adding items."""

    return jsonify(list(categories_for_select()))
