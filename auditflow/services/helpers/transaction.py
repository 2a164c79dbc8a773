"""
Unit-of-work helpers.

Every workflow event and every reorder runs inside ``atomic()``: all writes
commit together, or the session is rolled back and the failure is surfaced
as a domain exception.

Usage:
    from auditflow.services.helpers.transaction import atomic, lock_row

    with atomic():
        sub = lock_row(Submission, submission_id)
        sub.status = "under_review"

Error mapping:
    StaleDataError  → StateConflictError (version_id_col race lost)
    IntegrityError  → StateConflictError (unique / FK violation on commit)
    anything else   → rolled back and re-raised unchanged
"""

import logging
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from auditflow.core.exceptions import NotFoundError, StateConflictError
from auditflow.models import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """Commit on success, roll back and map concurrency errors on failure."""
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent update lost: %s", exc)
        raise StateConflictError(
            "The record was modified by another request; reload and retry",
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise StateConflictError("Constraint violation; reload and retry") from exc
    except Exception:
        db.session.rollback()
        raise


def lock_row(model, pk, *, resource: str | None = None):
    """
    Re-read a row ``FOR UPDATE`` and refresh the identity map copy.

    SQLite ignores the lock clause; PostgreSQL holds a row lock until the
    surrounding ``atomic()`` block ends.
    """
    stmt = (
        select(model)
        .where(model.id == pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=resource or model.__name__, resource_id=pk)
    return obj


def get_or_404(model, pk, *, resource: str | None = None):
    """Fetch by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=resource or model.__name__, resource_id=pk)
    return obj
