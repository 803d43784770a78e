"""The murmuration blueprint."""

from flask import Blueprint

bp = Blueprint("murmuration", __name__, url_prefix="/murmurations")

from . import routes  # noqa: E402

__all__ = ["routes"]
