"""Resolve the acting user of a request.

Authentication happens upstream; the gateway forwards the authenticated
user's id in the ``X-User-Id`` header.
"""

from flask import request

from . import db
from .errors import Unauthorized
from .models import User

ACTOR_HEADER = "X-User-Id"


def current_actor() -> User:
    raw = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not raw.isdigit():
        raise Unauthorized(f"{ACTOR_HEADER} header required")
    user = db.session.get(User, int(raw))
    if user is None or not user.is_active:
        raise Unauthorized("Unknown or inactive user")
    return user
