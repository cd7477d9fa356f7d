# Overview: Flask extension instances and storage-handle helpers.

import logging
import sqlite3
from contextlib import contextmanager

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import NotInitializedError, StorageError

logger = logging.getLogger(__name__)

db = SQLAlchemy()

STORAGE_OPEN_KEY = "tillcore.storage_open"


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # Line items cascade with their parent transaction
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def mark_storage_open(app=None) -> None:
    app = app or current_app._get_current_object()
    app.extensions[STORAGE_OPEN_KEY] = True


def mark_storage_closed(app=None) -> None:
    app = app or current_app._get_current_object()
    app.extensions.pop(STORAGE_OPEN_KEY, None)


def storage_is_open() -> bool:
    return bool(current_app.extensions.get(STORAGE_OPEN_KEY))


def require_storage():
    """Return the session, or raise if storage has not been opened yet."""
    if not storage_is_open():
        raise NotInitializedError("Storage has not been initialized")
    return db.session


@contextmanager
def storage_operation(message: str):
    """
    Yield the session for one store operation.

    SQLAlchemy failures are rolled back and re-raised as StorageError with
    `message` as the user-safe text; every other exception passes through.
    """
    session = require_storage()
    try:
        yield session
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("%s: %s", message, exc)
        raise StorageError(message) from exc
