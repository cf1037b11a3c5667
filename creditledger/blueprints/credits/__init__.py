from flask import Blueprint

bp = Blueprint("credits", __name__)

from . import routes  # noqa: E402,F401
