"""Business logic for submitting, editing, and reading reimbursement requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from werkzeug.datastructures import FileStorage

from packages.reimbursement_common import (
    AuthorizationError,
    InvalidTransitionError,
    NotFound,
    ReimbursementFile,
    ReimbursementRequest,
    RequestStatus,
    StorageUnavailable,
    group_items_by_category,
)

from .forms import RequestFormData
from .repositories import ReimbursementRepository
from .storage import RECEIPT_FOLDER_PREFIX, ReceiptStorage, ReceiptStorageError
from .workflow import Actor, allowed_actions, require_admin

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: List[str] = [
    "Transportation",
    "Meals & Drinks",
    "Office Supplies",
    "Communication",
    "Business Travel",
    "Other",
]


@dataclass(slots=True)
class AttachmentResult:
    """Outcome of the best-effort receipt step that follows submission."""

    ok: bool
    file: Optional[ReimbursementFile] = None
    error: Optional[str] = None


class ReimbursementService:
    """Coordinates employee-facing operations on top of the Request Store."""

    def __init__(self, repository: ReimbursementRepository, storage: ReceiptStorage):
        self._repository = repository
        self._storage = storage

    def submit(self, actor: Actor, form: RequestFormData) -> ReimbursementRequest:
        return self._repository.create_request(
            user_id=actor.actor_id,
            title=form.title,
            subtitle=form.subtitle,
            description=form.description,
            expense_date=form.expense_date,
            items=form.items,
        )

    def update_pending(
        self, request_id: str, actor: Actor, form: RequestFormData
    ) -> ReimbursementRequest:
        return self._repository.update_pending(
            request_id,
            user_id=actor.actor_id,
            title=form.title,
            subtitle=form.subtitle,
            description=form.description,
            expense_date=form.expense_date,
            items=form.items,
        )

    def get_for(self, request_id: str, actor: Actor) -> ReimbursementRequest:
        """Return a request the actor owns, or any request for administrators."""

        request = self._repository.get_request(request_id)
        if not actor.is_admin and request.user_id != actor.actor_id:
            raise AuthorizationError("You can only view your own requests.")
        return request

    def list_for_owner(self, owner_id: str, actor: Actor) -> List[ReimbursementRequest]:
        if not actor.is_admin and owner_id != actor.actor_id:
            raise AuthorizationError("You can only list your own requests.")
        return self._repository.list_by_owner(owner_id)

    def list_all(
        self, actor: Actor, status: Optional[RequestStatus] = None
    ) -> List[ReimbursementRequest]:
        require_admin(actor, "list all")
        return self._repository.list_all(status)

    def delete(self, request_id: str, actor: Actor) -> None:
        """Delete a request and release its stored receipts."""

        require_admin(actor, "delete")
        for reference in self._repository.delete_request(request_id):
            self._storage.remove(reference)

    def attach_receipt(
        self,
        request_id: str,
        item_id: int,
        actor: Actor,
        receipt: FileStorage,
    ) -> AttachmentResult:
        """Store a receipt for an item of a pending request.

        Validation problems raise; a failed write to file storage is reported
        through the result and leaves the request untouched.
        """

        request = self.get_for(request_id, actor)
        if request.status != RequestStatus.PENDING:
            raise InvalidTransitionError("attach a receipt to", request.status.value)
        if not any(item.id == item_id for item in request.items):
            raise NotFound(f"Item {item_id} not found on request {request_id}.")
        try:
            stored = self._storage.store(request_id, item_id, receipt)
        except ReceiptStorageError as exc:
            return AttachmentResult(ok=False, error=f"Receipt upload failed: {exc}")
        try:
            saved = self._repository.record_receipt(request_id, item_id, stored)
        except (NotFound, InvalidTransitionError, StorageUnavailable):
            self._storage.remove(stored.file_path)
            raise
        logger.info("Stored receipt %s for request %s", saved.file_path, request_id)
        return AttachmentResult(ok=True, file=saved)

    def receipt_path(self, reference: str, actor: Actor) -> Path:
        """Resolve a stored receipt the actor is allowed to download."""

        folder = reference.split("/", 1)[0]
        if not folder.startswith(RECEIPT_FOLDER_PREFIX):
            raise NotFound("Receipt not found.")
        self.get_for(folder[len(RECEIPT_FOLDER_PREFIX):], actor)
        return self._storage.resolve(reference)


def build_preview(request: ReimbursementRequest) -> str:
    """Render a copy-ready preview for a reimbursement request."""

    lines = [
        f"Reimbursement Request: {request.title}",
        f"Subtitle: {request.subtitle or 'N/A'}",
        f"Submitted by: {request.user_id} on {request.submitted_at:%Y-%m-%d}",
        f"Status: {request.status.value}",
        f"Description: {request.description or 'N/A'}",
        "",
        "Line Items:",
    ]
    for item in request.items:
        receipt = f" (receipt: {item.receipt_reference})" if item.receipt_reference else ""
        lines.append(
            "  - "
            f"{item.expense_date:%Y-%m-%d} | {item.category} | {item.description} | "
            f"{item.amount:,.2f}{receipt}"
        )
    lines.extend(["", f"Total: {request.total_amount:,.2f}"])
    category_totals = group_items_by_category(request.items)
    if category_totals:
        lines.append("  - By category:")
        for category, amount in category_totals.items():
            lines.append(f"      * {category}: {amount:,.2f}")
    if request.processed_at:
        lines.extend(
            [
                "",
                f"Processed by {request.processed_by} on {request.processed_at:%Y-%m-%d %H:%M} UTC",
            ]
        )
    if request.notes:
        lines.append(f"Notes: {request.notes}")
    actions = allowed_actions(request.status)
    if actions:
        lines.append(f"Next actions: {', '.join(actions)}")
    return "\n".join(lines)


def categories_for_select() -> Iterable[str]:
    """Return the categories offered to clients when adding items."""

    return DEFAULT_CATEGORIES
