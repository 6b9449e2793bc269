"""Database access layer for reimbursement requests."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from packages.reimbursement_common import (
    AuthorizationError,
    InvalidTransitionError,
    ItemDraft,
    ItemLedger,
    NotFound,
    ReimbursementFile,
    ReimbursementItem,
    ReimbursementRequest,
    RequestStatus,
    StatusChange,
    StatusSummary,
    ValidationError,
    from_minor_units,
    to_minor_units,
)

from .database import (
    as_utc,
    reimbursement_files,
    reimbursement_items,
    reimbursement_requests,
    session_scope,
    status_changes,
    utc_now,
)
from .events import (
    REQUEST_CHANGED,
    REQUEST_CREATED,
    REQUEST_DELETED,
    EventBus,
    RequestEvent,
)

logger = logging.getLogger(__name__)


def _staged_items(items: Sequence[ItemDraft]) -> ItemLedger:
    """Re-validate drafts through the ledger and reject empty requests."""

    if not items:
        raise ValidationError("A request needs at least one item.")
    return ItemLedger(items)


def _require_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Request title is required.")
    return title


class ReimbursementRepository:
    """Request Store: durable persistence for requests, items, and receipts.

    Every mutating method runs in a single transaction and publishes a
    :class:`RequestEvent` on the injected bus once the transaction commits.
    """

    def __init__(
        self,
        engine: Engine,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._engine = engine
        self._events = events
        self._clock = clock

    # -------- Requests --------
    def create_request(
        self,
        *,
        user_id: str,
        title: str,
        description: str,
        items: Sequence[ItemDraft],
        subtitle: str = "",
        expense_date: Optional[date] = None,
    ) -> ReimbursementRequest:
        """Persist a new pending request together with all of its items."""

        title = _require_title(title)
        ledger = _staged_items(items)
        request_id = str(uuid4())
        now = self._now()
        with session_scope(self._engine) as session:
            session.execute(
                insert(reimbursement_requests).values(
                    id=request_id,
                    user_id=str(user_id),
                    title=title,
                    subtitle=(subtitle or "").strip(),
                    description=(description or "").strip(),
                    expense_date=expense_date,
                    total_amount_cents=to_minor_units(ledger.total()),
                    status=RequestStatus.PENDING.value,
                    submitted_at=now,
                    updated_at=now,
                )
            )
            self._insert_items(session, request_id, ledger.items)
            saved = self._load_request(session, request_id)
        logger.info(
            "Created reimbursement request %s for user %s (%d items, total %s)",
            request_id,
            user_id,
            len(saved.items),
            saved.total_amount,
        )
        self._publish(REQUEST_CREATED, saved)
        return saved

    def get_request(self, request_id: str) -> ReimbursementRequest:
        """Fetch a single request including its items and files."""

        with session_scope(self._engine) as session:
            return self._load_request(session, request_id)

    def list_by_owner(self, user_id: str) -> List[ReimbursementRequest]:
        """Return the owner's requests, newest submission first."""

        query = (
            select(reimbursement_requests)
            .where(reimbursement_requests.c.user_id == str(user_id))
            .order_by(reimbursement_requests.c.submitted_at.desc())
        )
        return self._list(query)

    def list_all(
        self, status: Optional[RequestStatus] = None
    ) -> List[ReimbursementRequest]:
        """Return every request, optionally filtered by status, newest first."""

        query = select(reimbursement_requests)
        if status is not None:
            query = query.where(reimbursement_requests.c.status == status.value)
        return self._list(query.order_by(reimbursement_requests.c.submitted_at.desc()))

    def update_pending(
        self,
        request_id: str,
        *,
        user_id: str,
        title: str,
        description: str,
        items: Sequence[ItemDraft],
        subtitle: str = "",
        expense_date: Optional[date] = None,
    ) -> ReimbursementRequest:
        """Replace metadata and items of the owner's still-pending request."""

        title = _require_title(title)
        ledger = _staged_items(items)
        now = self._now()
        with session_scope(self._engine) as session:
            result = session.execute(
                update(reimbursement_requests)
                .where(
                    reimbursement_requests.c.id == request_id,
                    reimbursement_requests.c.user_id == str(user_id),
                    reimbursement_requests.c.status == RequestStatus.PENDING.value,
                )
                .values(
                    title=title,
                    subtitle=(subtitle or "").strip(),
                    description=(description or "").strip(),
                    expense_date=expense_date,
                    total_amount_cents=to_minor_units(ledger.total()),
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                row = session.execute(
                    select(
                        reimbursement_requests.c.user_id,
                        reimbursement_requests.c.status,
                    ).where(reimbursement_requests.c.id == request_id)
                ).one_or_none()
                if row is None:
                    raise NotFound(f"Request {request_id} not found.")
                if row.user_id != str(user_id):
                    raise AuthorizationError("Only the owner can edit this request.")
                raise InvalidTransitionError("edit", row.status)
            session.execute(
                delete(reimbursement_items).where(
                    reimbursement_items.c.request_id == request_id
                )
            )
            self._insert_items(session, request_id, ledger.items)
            saved = self._load_request(session, request_id)
        logger.info("Owner %s updated pending request %s", user_id, request_id)
        self._publish(REQUEST_CHANGED, saved)
        return saved

    def apply_status_change(
        self,
        request_id: str,
        *,
        action: str,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        actor_id: str,
        notes: Optional[str] = None,
        kind: str = "transition",
    ) -> ReimbursementRequest:
        """Move a request from ``expected_status`` to ``new_status`` atomically.

        The update is conditional on the stored status still being
        ``expected_status``; when another writer got there first nothing is
        written and :class:`InvalidTransitionError` reports the status found.
        """

        now = self._now()
        with session_scope(self._engine) as session:
            result = session.execute(
                update(reimbursement_requests)
                .where(
                    reimbursement_requests.c.id == request_id,
                    reimbursement_requests.c.status == expected_status.value,
                )
                .values(
                    status=new_status.value,
                    processed_at=now,
                    processed_by=str(actor_id),
                    notes=notes,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                current = session.execute(
                    select(reimbursement_requests.c.status).where(
                        reimbursement_requests.c.id == request_id
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise NotFound(f"Request {request_id} not found.")
                raise InvalidTransitionError(action, current)
            session.execute(
                insert(status_changes).values(
                    request_id=request_id,
                    from_status=expected_status.value,
                    to_status=new_status.value,
                    actor_id=str(actor_id),
                    kind=kind,
                    notes=notes,
                    changed_at=now,
                )
            )
            saved = self._load_request(session, request_id)
        self._publish(REQUEST_CHANGED, saved)
        return saved

    def delete_request(self, request_id: str) -> List[str]:
        """Remove a request with its items, files, and history.

        Returns:
            List[str]: Stored receipt paths that belonged to the request so the
            caller can release them from file storage.
        """

        with session_scope(self._engine) as session:
            paths = list(
                session.execute(
                    select(reimbursement_files.c.file_path).where(
                        reimbursement_files.c.request_id == request_id
                    )
                ).scalars()
            )
            for table in (reimbursement_files, status_changes, reimbursement_items):
                session.execute(delete(table).where(table.c.request_id == request_id))
            result = session.execute(
                delete(reimbursement_requests).where(
                    reimbursement_requests.c.id == request_id
                )
            )
            if result.rowcount == 0:
                raise NotFound(f"Request {request_id} not found.")
        logger.info("Deleted reimbursement request %s", request_id)
        self._publish(REQUEST_DELETED, None, request_id=request_id)
        return paths

    # -------- Receipts --------
    def record_receipt(
        self, request_id: str, item_id: int, stored: ReimbursementFile
    ) -> ReimbursementFile:
        """Attach a stored receipt to an item and keep its file metadata.

        The parent request must still be pending when the write happens; a
        request processed in the meantime raises
        :class:`InvalidTransitionError` and nothing is recorded.
        """

        now = self._now()
        with session_scope(self._engine) as session:
            guarded = session.execute(
                update(reimbursement_requests)
                .where(
                    reimbursement_requests.c.id == request_id,
                    reimbursement_requests.c.status == RequestStatus.PENDING.value,
                )
                .values(updated_at=now)
            )
            if guarded.rowcount == 0:
                current = session.execute(
                    select(reimbursement_requests.c.status).where(
                        reimbursement_requests.c.id == request_id
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise NotFound(f"Request {request_id} not found.")
                raise InvalidTransitionError("attach a receipt to", current)
            result = session.execute(
                update(reimbursement_items)
                .where(
                    reimbursement_items.c.id == item_id,
                    reimbursement_items.c.request_id == request_id,
                )
                .values(receipt_reference=stored.file_path)
            )
            if result.rowcount == 0:
                raise NotFound(f"Item {item_id} not found on request {request_id}.")
            file_id = session.execute(
                insert(reimbursement_files)
                .values(
                    request_id=request_id,
                    item_id=item_id,
                    file_name=stored.file_name,
                    file_path=stored.file_path,
                    file_size=stored.file_size,
                    mime_type=stored.mime_type,
                    uploaded_at=now,
                )
                .returning(reimbursement_files.c.id)
            ).scalar_one()
            saved = self._load_request(session, request_id)
        self._publish(REQUEST_CHANGED, saved)
        return ReimbursementFile(
            id=file_id,
            request_id=request_id,
            item_id=item_id,
            file_name=stored.file_name,
            file_path=stored.file_path,
            file_size=stored.file_size,
            mime_type=stored.mime_type,
            uploaded_at=now,
        )

    # -------- History and aggregates --------
    def list_status_changes(self, request_id: str) -> List[StatusChange]:
        """Return the transition history of a request, oldest first."""

        with session_scope(self._engine) as session:
            rows = session.execute(
                select(status_changes)
                .where(status_changes.c.request_id == request_id)
                .order_by(status_changes.c.changed_at, status_changes.c.id)
            ).all()
        return [self._row_to_change(row) for row in rows]

    def sum_submitted_between(
        self,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[RequestStatus]] = None,
    ) -> Decimal:
        """Sum request totals with ``start <= submitted_at < end``."""

        query = select(
            func.coalesce(func.sum(reimbursement_requests.c.total_amount_cents), 0)
        ).where(
            reimbursement_requests.c.submitted_at >= start,
            reimbursement_requests.c.submitted_at < end,
        )
        if statuses is not None:
            query = query.where(
                reimbursement_requests.c.status.in_([s.value for s in statuses])
            )
        with session_scope(self._engine) as session:
            cents = session.execute(query).scalar_one()
        return from_minor_units(int(cents))

    def status_summary(self, user_id: Optional[str] = None) -> StatusSummary:
        """Count requests per status and sum their totals."""

        query = select(
            reimbursement_requests.c.status,
            func.count(),
            func.coalesce(func.sum(reimbursement_requests.c.total_amount_cents), 0),
        ).group_by(reimbursement_requests.c.status)
        if user_id is not None:
            query = query.where(reimbursement_requests.c.user_id == str(user_id))
        with session_scope(self._engine) as session:
            rows = session.execute(query).all()
        counts = {status.value: 0 for status in RequestStatus}
        total_cents = 0
        for status, count, cents in rows:
            counts[status] = int(count)
            total_cents += int(cents)
        return StatusSummary(
            total=sum(counts.values()),
            counts=counts,
            total_amount=from_minor_units(total_cents),
        )

    # -------- Helpers --------
    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _publish(
        self,
        kind: str,
        saved: Optional[ReimbursementRequest],
        *,
        request_id: Optional[str] = None,
    ) -> None:
        if self._events is None:
            return
        self._events.publish(
            RequestEvent(
                kind=kind,
                request_id=saved.id if saved is not None else str(request_id),
                status=saved.status.value if saved is not None else None,
            )
        )

    @staticmethod
    def _insert_items(
        session: Session, request_id: str, items: Sequence[ItemDraft]
    ) -> None:
        session.execute(
            insert(reimbursement_items),
            [
                {
                    "request_id": request_id,
                    "position": position,
                    "description": draft.description,
                    "amount_cents": to_minor_units(draft.amount),
                    "category": draft.category,
                    "expense_date": draft.expense_date,
                    "receipt_reference": draft.receipt_reference,
                }
                for position, draft in enumerate(items)
            ],
        )

    def _list(self, query) -> List[ReimbursementRequest]:
        with session_scope(self._engine) as session:
            rows = session.execute(query).all()
            ids = [row._mapping["id"] for row in rows]
            items = self._items_by_request(session, ids)
            files = self._files_by_request(session, ids)
        return [
            self._row_to_request(
                row,
                items.get(row._mapping["id"], []),
                files.get(row._mapping["id"], []),
            )
            for row in rows
        ]

    def _load_request(self, session: Session, request_id: str) -> ReimbursementRequest:
        row = session.execute(
            select(reimbursement_requests).where(
                reimbursement_requests.c.id == request_id
            )
        ).one_or_none()
        if row is None:
            raise NotFound(f"Request {request_id} not found.")
        items = self._items_by_request(session, [request_id])
        files = self._files_by_request(session, [request_id])
        return self._row_to_request(
            row, items.get(request_id, []), files.get(request_id, [])
        )

    def _items_by_request(
        self, session: Session, request_ids: Sequence[str]
    ) -> Dict[str, List[ReimbursementItem]]:
        grouped: Dict[str, List[ReimbursementItem]] = defaultdict(list)
        if not request_ids:
            return grouped
        rows = session.execute(
            select(reimbursement_items)
            .where(reimbursement_items.c.request_id.in_(request_ids))
            .order_by(reimbursement_items.c.request_id, reimbursement_items.c.position)
        ).all()
        for row in rows:
            item = self._row_to_item(row)
            grouped[item.request_id].append(item)
        return grouped

    def _files_by_request(
        self, session: Session, request_ids: Sequence[str]
    ) -> Dict[str, List[ReimbursementFile]]:
        grouped: Dict[str, List[ReimbursementFile]] = defaultdict(list)
        if not request_ids:
            return grouped
        rows = session.execute(
            select(reimbursement_files)
            .where(reimbursement_files.c.request_id.in_(request_ids))
            .order_by(reimbursement_files.c.id)
        ).all()
        for row in rows:
            values = row._mapping
            grouped[values["request_id"]].append(
                ReimbursementFile(
                    id=values["id"],
                    request_id=values["request_id"],
                    item_id=values["item_id"],
                    file_name=values["file_name"],
                    file_path=values["file_path"],
                    file_size=values["file_size"],
                    mime_type=values["mime_type"],
                    uploaded_at=as_utc(values["uploaded_at"]),
                )
            )
        return grouped

    @staticmethod
    def _row_to_request(
        row, items: List[ReimbursementItem], files: List[ReimbursementFile]
    ) -> ReimbursementRequest:
        """Convert a SQLAlchemy row to a :class:`ReimbursementRequest`."""

        values = row._mapping
        return ReimbursementRequest(
            id=values["id"],
            user_id=values["user_id"],
            title=values["title"],
            subtitle=values["subtitle"] or "",
            description=values["description"] or "",
            expense_date=values["expense_date"],
            status=RequestStatus(values["status"]),
            total_amount=from_minor_units(values["total_amount_cents"]),
            submitted_at=as_utc(values["submitted_at"]),
            processed_at=as_utc(values["processed_at"]),
            processed_by=values["processed_by"],
            notes=values["notes"],
            updated_at=as_utc(values["updated_at"]),
            items=items,
            files=files,
        )

    @staticmethod
    def _row_to_item(row) -> ReimbursementItem:
        """Convert a SQLAlchemy row to a :class:`ReimbursementItem`."""

        values = row._mapping
        return ReimbursementItem(
            id=values["id"],
            request_id=values["request_id"],
            description=values["description"],
            amount=from_minor_units(values["amount_cents"]),
            category=values["category"],
            expense_date=values["expense_date"],
            receipt_reference=values["receipt_reference"],
        )

    @staticmethod
    def _row_to_change(row) -> StatusChange:
        values = row._mapping
        return StatusChange(
            id=values["id"],
            request_id=values["request_id"],
            from_status=RequestStatus(values["from_status"]),
            to_status=RequestStatus(values["to_status"]),
            actor_id=values["actor_id"],
            kind=values["kind"],
            notes=values["notes"],
            changed_at=as_utc(values["changed_at"]),
        )
