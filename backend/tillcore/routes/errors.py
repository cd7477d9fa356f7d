# Overview: Maps tillcore errors to JSON responses for every blueprint.

from flask import current_app

from ..errors import (
    CheckoutError,
    DegradedCommitError,
    NotFoundError,
    NotInitializedError,
    StorageError,
    ValidationError,
)


def register_error_handlers(app):
    @app.errorhandler(ValidationError)
    def handle_validation(e):
        body = {"error": str(e)}
        if e.field:
            body["field"] = e.field
        return body, 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return {"error": str(e)}, 404

    @app.errorhandler(CheckoutError)
    def handle_checkout(e):
        return {"error": str(e), "details": e.details}, 409

    @app.errorhandler(NotInitializedError)
    def handle_not_initialized(e):
        return {"error": "Storage is starting up, try again shortly"}, 503

    @app.errorhandler(StorageError)
    def handle_storage(e):
        current_app.logger.error("Storage error: %s (cause: %r)", e, e.__cause__)
        return {"error": str(e)}, 500

    @app.errorhandler(DegradedCommitError)
    def handle_degraded_commit(e):
        return {
            "error": str(e),
            "manual_entry_required": True,
            "notice": e.notice.to_dict(),
        }, 202
