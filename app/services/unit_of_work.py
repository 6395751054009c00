"""Atomic units of work on the Flask-SQLAlchemy session.

Service operations call each other (after-sale approval debits the ledger
and closes the order), so only the outermost ``atomic()`` block commits.
Inner blocks join it and any exception rolls the whole unit back.
"""
from app.extensions import db
from flask import current_app, has_app_context
from sqlalchemy.orm.exc import StaleDataError
from contextlib import contextmanager
from functools import wraps
import logging
import time

logger = logging.getLogger(__name__)

_DEPTH_KEY = 'atomic_depth'
_AFTER_COMMIT_KEY = 'atomic_after_commit'


def in_atomic_block():
    return db.session.info.get(_DEPTH_KEY, 0) > 0


@contextmanager
def atomic():
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
            session.info.pop(_AFTER_COMMIT_KEY, None)
        raise
    finally:
        session.info[_DEPTH_KEY] = depth

    if depth == 0:
        _run_after_commit_hooks(session)


def on_commit(fn):
    """Run ``fn`` once the outermost unit commits.

    Outside any unit it runs immediately.
    """
    session = db.session
    if session.info.get(_DEPTH_KEY, 0) == 0:
        fn()
        return
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(fn)


def _run_after_commit_hooks(session):
    hooks = session.info.pop(_AFTER_COMMIT_KEY, [])
    for hook in hooks:
        try:
            hook()
        except Exception:
            # Local state is already committed; the hook only notifies.
            logger.exception("after-commit hook %r failed", hook)


def _stale_retry_attempts():
    if has_app_context():
        return current_app.config.get('STALE_RETRY_ATTEMPTS', 3)
    return 3


def transactional(fn):
    """Run ``fn`` as one atomic unit, retried on optimistic-lock conflicts.

    Retries only happen for the outermost call: a nested call shares the
    caller's unit, so the caller is the one that re-runs.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if in_atomic_block():
            with atomic():
                return fn(*args, **kwargs)

        max_attempts = _stale_retry_attempts()
        attempt = 0
        while True:
            attempt += 1
            try:
                with atomic():
                    return fn(*args, **kwargs)
            except StaleDataError:
                if attempt >= max_attempts:
                    logger.error(
                        "%s gave up after %s stale-data conflicts",
                        fn.__qualname__,
                        attempt,
                    )
                    raise
                logger.warning(
                    "%s hit a concurrent update, retrying (attempt %s)",
                    fn.__qualname__,
                    attempt,
                )
                time.sleep(0.05 * attempt)
    return wrapper
