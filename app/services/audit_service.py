from app.extensions import db
from app.models import AuditLog
from flask import request, has_request_context
import logging
import json

logger = logging.getLogger(__name__)
major_logger = logging.getLogger('major_events')

MAJOR_ACTION_PREFIXES = (
    'ORDER_',
    'PAYMENT_',
    'SHIPPING_',
    'BALANCE_',
    'AFTER_SALE_',
)


def configure_major_events_log(path):
    """Attach the dedicated file handler for money/lifecycle events."""
    if major_logger.handlers:
        return
    major_logger.setLevel(logging.INFO)
    major_logger.propagate = False
    if not path:
        major_logger.addHandler(logging.NullHandler())
        return
    handler = logging.FileHandler(path)
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)
    major_logger.addHandler(handler)


def _should_log_major(action: str) -> bool:
    if not action:
        return False
    return action.startswith(MAJOR_ACTION_PREFIXES)


def _brief(payload):
    if payload is None:
        return None
    try:
        brief = json.dumps(payload, ensure_ascii=False, separators=(',', ':'))
    except (TypeError, ValueError):
        return repr(payload)[:600]
    if len(brief) > 600:
        brief = brief[:600] + '...'
    return brief


def log_audit(
        actor_id=None,
        actor_role='SYSTEM',
        action='',
        target_type=None,
        target_id=None,
        payload=None):
    """Record an audit row in the caller's unit of work.

    The row is only added to the session; it commits (or rolls back)
    together with the change it describes.
    """
    ip = None
    user_agent = None
    path = None
    method = None
    if has_request_context():
        ip = request.remote_addr
        user_agent = request.headers.get('User-Agent')
        path = request.path
        method = request.method

    audit = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type=target_type,
        target_id=target_id,
        ip=ip,
        user_agent=user_agent
    )
    if payload:
        audit.set_payload(payload)
    db.session.add(audit)

    payload_brief = _brief(payload)
    logger.info(
        "AUDIT action=%s actor_role=%s actor_id=%s target_type=%s "
        "target_id=%s method=%s path=%s payload=%s",
        action,
        actor_role,
        actor_id,
        target_type,
        target_id,
        method,
        path,
        payload_brief,
    )

    if _should_log_major(action):
        major_logger.info(
            "action=%s actor_role=%s actor_id=%s target_type=%s "
            "target_id=%s payload=%s",
            action,
            actor_role,
            actor_id,
            target_type,
            target_id,
            payload_brief,
        )
    return audit
