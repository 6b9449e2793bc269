"""Domain models, item ledger, and error taxonomy for reimbursements."""

from .errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFound,
    ReimbursementError,
    StorageUnavailable,
    ValidationError,
)
from .reimbursements import (
    ItemDraft,
    ItemLedger,
    MAX_AMOUNT,
    ReimbursementFile,
    ReimbursementItem,
    ReimbursementRequest,
    RequestStatus,
    StatusChange,
    StatusSummary,
    from_minor_units,
    group_items_by_category,
    parse_amount,
    to_minor_units,
    total,
)

__all__ = [
    "AuthorizationError",
    "InvalidTransitionError",
    "ItemDraft",
    "ItemLedger",
    "MAX_AMOUNT",
    "NotFound",
    "ReimbursementError",
    "ReimbursementFile",
    "ReimbursementItem",
    "ReimbursementRequest",
    "RequestStatus",
    "StatusChange",
    "StatusSummary",
    "StorageUnavailable",
    "ValidationError",
    "from_minor_units",
    "group_items_by_category",
    "parse_amount",
    "to_minor_units",
    "total",
]
