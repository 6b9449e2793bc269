"""Identity loading and role-based access control.

The session service in front of this API authenticates people and forwards
who they are in the ``X-Actor-Id`` and ``X-Actor-Role`` headers. The request
loader below turns those headers into a :class:`SessionUser` for
:mod:`flask_login`; views then work with the plain :class:`~.workflow.Actor`
the core understands.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable, Optional

from flask import Request, jsonify
from flask_login import LoginManager, UserMixin, current_user

from packages.reimbursement_common import AuthorizationError

from .workflow import Actor

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
ROLES = frozenset({"admin", "employee"})

login_manager = LoginManager()


class SessionUser(UserMixin):
    """Authenticated caller as described by the session service."""

    def __init__(self, actor_id: str, role: str):
        self.id = actor_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_actor(self) -> Actor:
        return Actor(actor_id=self.id, is_admin=self.is_admin)


@login_manager.request_loader
def load_user_from_request(request: Request) -> Optional[SessionUser]:
    """Build the caller from identity headers, or ``None`` when absent."""

    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    if not actor_id:
        return None
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "employee").strip().lower()
    if role not in ROLES:
        return None
    return SessionUser(actor_id, role)


@login_manager.unauthorized_handler
def unauthorized():
    response = jsonify(
        error="authentication_required",
        message=f"Send the {ACTOR_ID_HEADER} and {ACTOR_ROLE_HEADER} headers.",
    )
    response.status_code = 401
    return response


def current_actor() -> Actor:
    """Return the :class:`Actor` for the active request."""

    return current_user.to_actor()


def roles_required(*roles: str) -> Callable:
    """Protect a view based on the caller's role.

    Unauthenticated callers get ``401``; authenticated callers whose role is
    not in ``roles`` get the ``403`` produced for :class:`AuthorizationError`.
    An empty ``roles`` only requires authentication.
    """

    allowed = set(roles)

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if allowed and getattr(current_user, "role", None) not in allowed:
                raise AuthorizationError("You do not have access to this resource.")
            return view(*args, **kwargs)

        return wrapped

    return decorator


def login_required(view: Callable) -> Callable:
    """Require any authenticated caller."""

    return roles_required()(view)


def admin_required(view: Callable) -> Callable:
    """Restrict access to administrators."""

    return roles_required("admin")(view)
