"""
Actor resolution.

Credentials are checked upstream by the gateway, which forwards the actor's
name in a request header (``ACTOR_HEADER``, default ``X-Actor``). The request
loader turns that header into ``current_user`` so views can use
``login_required`` and stamp ``created_by`` / ``updated_by``.
"""

from flask import current_app, jsonify
from flask_login import LoginManager, UserMixin

login_manager = LoginManager()


class Actor(UserMixin):
    def __init__(self, name: str):
        self.name = name

    def get_id(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<Actor {self.name}>"


@login_manager.request_loader
def load_actor_from_request(request):
    header = current_app.config.get("ACTOR_HEADER", "X-Actor")
    name = (request.headers.get(header) or "").strip()
    if not name:
        return None
    return Actor(name[:255])


@login_manager.unauthorized_handler
def unauthorized():
    header = current_app.config.get("ACTOR_HEADER", "X-Actor")
    return jsonify({"reason": f"Missing {header} header", "error": "unauthorized"}), 401


__all__ = ["Actor", "login_manager"]
