"""Approval state machine for reimbursement requests.

Normal flow::

    pending --approve--> approved --pay--> paid
    pending --reject---> rejected

Only administrators move requests. Each transition is a conditional write on
the current status, so two administrators acting on the same pending request
cannot both succeed. :meth:`ApprovalStateMachine.set_status` is the
administrative override used to correct mistakes; it is recorded separately
in the transition history and can be disabled through configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from packages.reimbursement_common import (
    AuthorizationError,
    InvalidTransitionError,
    ReimbursementRequest,
    RequestStatus,
    StatusChange,
)

from .repositories import ReimbursementRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Identity supplied by the session collaborator."""

    actor_id: str
    is_admin: bool = False


@dataclass(frozen=True)
class Transition:
    action: str
    source: RequestStatus
    target: RequestStatus


TRANSITIONS: Dict[str, Transition] = {
    "approve": Transition("approve", RequestStatus.PENDING, RequestStatus.APPROVED),
    "reject": Transition("reject", RequestStatus.PENDING, RequestStatus.REJECTED),
    "pay": Transition("pay", RequestStatus.APPROVED, RequestStatus.PAID),
}


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    return (notes or "").strip() or None


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise AuthorizationError(f"Only administrators may {action} requests.")


def allowed_actions(status: RequestStatus) -> List[str]:
    """Return the normal actions available from ``status``."""

    return [name for name, rule in TRANSITIONS.items() if rule.source == status]


class ApprovalStateMachine:
    """Validates and applies status transitions through the Request Store."""

    def __init__(
        self, repository: ReimbursementRepository, *, allow_override: bool = True
    ):
        self._repository = repository
        self._allow_override = allow_override

    def approve(
        self, request_id: str, actor: Actor, notes: Optional[str] = None
    ) -> ReimbursementRequest:
        """Approve a pending request.

        Returns:
            ReimbursementRequest: The request as stored after the transition.
        """

        return self.apply("approve", request_id, actor, notes)

    def reject(
        self, request_id: str, actor: Actor, notes: Optional[str] = None
    ) -> ReimbursementRequest:
        """Reject a pending request.

        Returns:
            ReimbursementRequest: The request as stored after the transition.
        """

        return self.apply("reject", request_id, actor, notes)

    def mark_paid(
        self, request_id: str, actor: Actor, notes: Optional[str] = None
    ) -> ReimbursementRequest:
        """Record payment of an approved request.

        Returns:
            ReimbursementRequest: The request as stored after the transition.
        """

        return self.apply("pay", request_id, actor, notes)

    def apply(
        self,
        action: str,
        request_id: str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> ReimbursementRequest:
        """Run the normal transition named ``action``.

        Raises:
            AuthorizationError: The actor is not an administrator.
            InvalidTransitionError: The request is not in the action's source
                status, including when a concurrent transition won the race.
            NotFound: The request does not exist.
        """

        rule = TRANSITIONS.get(action)
        if rule is None:
            raise InvalidTransitionError(action, None, f"Unknown action {action!r}.")
        require_admin(actor, action)
        updated = self._repository.apply_status_change(
            request_id,
            action=action,
            expected_status=rule.source,
            new_status=rule.target,
            actor_id=actor.actor_id,
            notes=_clean_notes(notes),
        )
        logger.info(
            "Request %s moved %s -> %s by %s",
            request_id,
            rule.source.value,
            rule.target.value,
            actor.actor_id,
        )
        return updated

    def set_status(
        self,
        request_id: str,
        status: RequestStatus | str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> ReimbursementRequest:
        """Force ``status`` regardless of the normal transition rules."""

        require_admin(actor, "override the status of")
        if not self._allow_override:
            raise AuthorizationError("Status overrides are disabled.")
        target = RequestStatus.parse(status)
        current = self._repository.get_request(request_id).status
        if current == target:
            raise InvalidTransitionError(
                "override",
                current.value,
                f"Request is already {current.value}.",
            )
        updated = self._repository.apply_status_change(
            request_id,
            action="override",
            expected_status=current,
            new_status=target,
            actor_id=actor.actor_id,
            notes=_clean_notes(notes),
            kind="override",
        )
        logger.warning(
            "Status override on request %s: %s -> %s by %s",
            request_id,
            current.value,
            target.value,
            actor.actor_id,
        )
        return updated

    def history(self, request_id: str, actor: Actor) -> List[StatusChange]:
        """Return the transitions and overrides recorded for a request.

        Returns:
            List[StatusChange]: Entries ordered oldest first.

        Raises:
            AuthorizationError: The actor is not an administrator.
            NotFound: The request does not exist.
        """

        require_admin(actor, "view the history of")
        self._repository.get_request(request_id)
        return self._repository.list_status_changes(request_id)
