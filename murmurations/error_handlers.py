from flask import Blueprint, current_app, jsonify
from flask_wtf.csrf import CSRFError

from .core.types import APIResponse
from .errors import AppError, PersistenceError

error_handlers_bp = Blueprint("error_handlers", __name__)


def _error(message, status_code):
    body: APIResponse = {"status": "error", "message": message}
    return jsonify(body), status_code


@error_handlers_bp.app_errorhandler(PersistenceError)
def handle_persistence_error(error):
    """Handles Firestore failures without exposing their details."""
    current_app.logger.error(f"Persistence Error: {error.message}")
    return _error(error.message, error.status_code)


@error_handlers_bp.app_errorhandler(AppError)
def handle_app_error(error):
    """Handles the rest of the engine's typed failures."""
    current_app.logger.warning(f"{type(error).__name__}: {error.message}")
    return _error(error.message, error.status_code)


@error_handlers_bp.app_errorhandler(404)
def handle_404(e):
    """Handles generic 404 errors for routes that don't exist."""
    return _error("Not found.", 404)


@error_handlers_bp.app_errorhandler(405)
def handle_405(e):
    return _error("Method not allowed.", 405)


@error_handlers_bp.app_errorhandler(500)
def handle_500(e):
    """Handles unexpected server errors."""
    current_app.logger.error(f"Internal Server Error: {e}")
    return _error("Something went wrong. Please try again later.", 500)


@error_handlers_bp.app_errorhandler(CSRFError)
def handle_csrf_error(e):
    """
    Handles CSRF errors, which usually indicate a session timeout or invalid form submission.
    """
    current_app.logger.warning(f"CSRF Error: {e.description}")
    return _error("Your session may have expired. Please try your action again.", 400)
