"""Error handlers for the application."""
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from academy_iam.core.errors import IdentityError

logger = logging.getLogger(__name__)

# Messages shown to API callers; full detail stays in the logs
USER_MESSAGES = {
    "DuplicateIdentity": "An account with this email already exists",
    "Conflict": "This record conflicts with an existing user",
    "NotFound": "User not found",
    "ProviderUnavailable": "Authentication service temporarily unavailable, please retry",
    "ProviderRejected": "Authentication service rejected the request",
    "RecordStoreUnavailable": "Database temporarily unavailable, please retry",
    "InvalidSession": "Your session has expired, please sign in again",
    "Unauthenticated": "Authentication required",
    "IdentityMismatch": "Authenticated identity does not match the request",
    "Inconsistent": "The operation could not be completed cleanly; an operator has been notified",
    "PartialDelete": "The user was not fully deleted; please retry the delete",
}

# Kinds whose own message is safe and useful to show
CALLER_FACING_KINDS = {"WeakSecret", "InvalidEmail", "ValidationError", "Unauthorized"}


def identity_error_response(error: IdentityError):
    """Build the JSON response for an IdentityError."""
    body = error.to_dict()
    if error.kind not in CALLER_FACING_KINDS:
        body["message"] = USER_MESSAGES.get(error.kind, "Request failed")
    body["error"] = error.kind
    status = 500 if error.state.needs_reconciliation else error.status
    return jsonify(body), status


def register_error_handlers(app):
    """Register error handlers with the Flask app."""

    @app.errorhandler(IdentityError)
    def handle_identity_error(error):
        """Map the error taxonomy to JSON responses."""
        log = logger.warning if error.status >= 500 or error.state.needs_reconciliation else logger.info
        log(
            "%s %s -> %s (state=%s): %s",
            request.method, request.path, error.kind, error.state.value, error.message,
        )
        return identity_error_response(error)

    @app.errorhandler(400)
    def bad_request(error):
        """Handle 400 Bad Request errors."""
        return jsonify({"error": "Bad Request", "message": "Malformed request"}), 400

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 Not Found errors."""
        return jsonify({"error": "Not Found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "Method Not Allowed", "message": "Method not allowed"}), 405

    @app.errorhandler(413)
    def payload_too_large(error):
        return jsonify({"error": "Payload Too Large", "message": "Request body too large"}), 413

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 Internal Server Error."""
        # ALWAYS log the full error (even in production) - logs are secure
        app.logger.error(f"Internal error: {error}", exc_info=True)
        return jsonify({"error": "Internal Server Error", "message": "An unexpected error occurred"}), 500

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        # Pass through HTTP errors
        if isinstance(error, HTTPException):
            return error

        app.logger.error(f"Unhandled exception: {error}", exc_info=True)
        print(f"[ERROR UNHANDLED] {error}")
        return jsonify({"error": "Internal Server Error", "message": "An unexpected error occurred"}), 500
