# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_HEADER = "X-User-Id"


def require_actor(f):
    """
    Require a resolved caller identity.

    Authentication happens upstream (gateway / session layer); by the time a
    request reaches this service the caller's user id is forwarded in the
    X-User-Id header. Sets g.user_id for the route.

    Returns 401 if the header is missing or not an integer.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": "Authentication required"}), 401
        try:
            g.user_id = int(raw)
        except ValueError:
            return jsonify({"error": f"Invalid {ACTOR_HEADER} header"}), 401

        return f(*args, **kwargs)

    return decorated_function
