"""Shared helpers for the approval services and blueprints.

unit_of_work:   one transaction per state transition, errors mapped to the
                approval exception hierarchy
get_client_ip:  X-Forwarded-For aware client address for audit entries
"""
import logging
from contextlib import contextmanager

from flask import request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from approval_engine.core.exceptions import StorageFailureError
from approval_engine.models import db

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(on_integrity_error=None):
    """Run the block in one transaction: commit on success, rollback otherwise.

    Usage::

        with unit_of_work(on_integrity_error=_duplicate_workflow):
            ...mutate ORM objects...

    IntegrityError  → ``on_integrity_error(exc)`` is raised when given (it is
                      called after the rollback, so it may query), else
                      StorageFailureError
    SQLAlchemyError → StorageFailureError
    Anything else   → rolled back and re-raised unchanged
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        if on_integrity_error is not None:
            raise on_integrity_error(exc) from exc
        raise StorageFailureError("Duplicate or constraint violation", diagnostic=str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error in approval transaction")
        raise StorageFailureError(diagnostic=str(exc)) from exc
    except Exception:
        db.session.rollback()
        raise


def get_client_ip() -> str | None:
    """Return real client IP, honouring X-Forwarded-For from load balancers.

    The first entry of the comma-delimited header is the originating client;
    falls back to remote_addr when the header is absent.
    """
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr
