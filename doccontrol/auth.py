"""Session helpers for the workflow API.

Authentication happens upstream; by the time a request reaches these views
the session holds ``user`` (a dict with at least ``id``) and ``roles``.
"""

from functools import wraps

from flask import abort, jsonify, session


def current_user_id():
    user = session.get('user')
    return user.get('id') if user else None


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get('user'):
            return jsonify(error='user not logged in', code='unauthenticated'), 401
        return view(*args, **kwargs)

    return wrapped


def roles_required(*required_roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not session.get('user'):
                return jsonify(error='user not logged in', code='unauthenticated'), 401
            user_roles = session.get('roles', [])
            role_names = [r.value if hasattr(r, 'value') else r for r in required_roles]
            if role_names and not any(r in user_roles for r in role_names):
                abort(403)
            return view(*args, **kwargs)

        return wrapped

    return decorator
