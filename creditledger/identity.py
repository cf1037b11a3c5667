from flask import jsonify
from flask_login import UserMixin

from .extensions import login_manager


class HostUser(UserMixin):
    """The host application owns users; we only see the opaque id it put in the session."""

    def __init__(self, user_id: str):
        self.id = str(user_id)

    def __repr__(self) -> str:
        return f"<HostUser {self.id!r}>"


@login_manager.user_loader
def load_user(user_id: str):
    if not user_id:
        return None
    return HostUser(user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "unauthorized", "code": 401}), 401
