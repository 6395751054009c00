"""After-sale requests (return, exchange, refund, support).

One unresolved request per order: a PENDING or APPROVED request blocks a
new one, a REJECTED request frees the order for resubmission. Approving a
return or refund reverses the order's settlement, marks the order
returned and queues the customer refund.
"""
from app.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.extensions import db
from app.models import (
    ACTIVE_AFTER_SALE_STATUSES,
    AfterSaleEvidence,
    AfterSaleRequest,
    AfterSaleStatus,
    AfterSaleType,
    EvidenceKind,
    OrderStatus,
    TransactionStatus,
)
from app.services.audit_service import log_audit
from app.services.order_service import parse_enum
from app.services.outbox_service import PAYMENT_REFUND
from app.services.unit_of_work import transactional
from sqlalchemy.exc import IntegrityError
from dataclasses import dataclass
from datetime import datetime
import logging
import secrets
import string

logger = logging.getLogger(__name__)

_REQUEST_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class EvidenceFile:
    """An uploaded file already stored under UPLOAD_FOLDER."""
    kind: EvidenceKind
    file_path: str
    content_type: str = None
    size_bytes: int = 0


class AfterSaleCaseManager:

    def __init__(self, order_ledger, ledger, outbox,
                 min_description_length=20, min_response_length=10,
                 max_images=5, max_video_bytes=50 * 1024 * 1024):
        self.orders = order_ledger
        self.ledger = ledger
        self.outbox = outbox
        self.min_description_length = min_description_length
        self.min_response_length = min_response_length
        self.max_images = max_images
        self.max_video_bytes = max_video_bytes

    @classmethod
    def from_config(cls, config, order_ledger, ledger, outbox):
        return cls(
            order_ledger,
            ledger,
            outbox,
            min_description_length=config['AFTER_SALE_MIN_DESCRIPTION_LENGTH'],
            min_response_length=config['AFTER_SALE_MIN_RESPONSE_LENGTH'],
            max_images=config['AFTER_SALE_MAX_IMAGES'],
            max_video_bytes=config['AFTER_SALE_MAX_VIDEO_BYTES'],
        )

    def get(self, request_id) -> AfterSaleRequest:
        req = db.session.get(AfterSaleRequest, request_id)
        if req is None:
            raise NotFoundError(
                'After-sale request not found', request_id=request_id)
        return req

    def validate_submission(self, request_type, description, evidence):
        request_type = parse_enum(AfterSaleType, request_type, 'request type')

        text = (description or '').strip()
        if len(text) < self.min_description_length:
            raise ValidationError(
                'Description must be at least '
                f'{self.min_description_length} characters',
                min_length=self.min_description_length)

        videos = [e for e in evidence if e.kind == EvidenceKind.VIDEO]
        photos = [e for e in evidence if e.kind == EvidenceKind.PHOTO]
        if len(videos) > 1:
            raise ValidationError('Only one video may be attached')
        if len(photos) > self.max_images:
            raise ValidationError(
                f'At most {self.max_images} photos may be attached',
                max_images=self.max_images)
        for video in videos:
            if video.size_bytes > self.max_video_bytes:
                raise ValidationError(
                    'Video exceeds the size limit',
                    max_bytes=self.max_video_bytes)
        if request_type.reverses_settlement and not (videos and photos):
            raise ValidationError(
                f'{request_type.value.title()} requests need an unboxing '
                'video and at least one photo')
        return request_type, text

    @transactional
    def open(self, order_id, customer_id, request_type, description,
             evidence=(), subject=None, reason=None):
        evidence = list(evidence)
        request_type, text = self.validate_submission(
            request_type, description, evidence)

        order = self.orders.lock(order_id)
        if order.customer_id != customer_id:
            raise NotFoundError('Order not found', order_id=order_id)
        if order.status != OrderStatus.DELIVERED:
            raise InvalidStateError(
                'After-sale requests are only accepted for delivered orders',
                order_id=order.id,
                status=order.status.value)

        existing = order.after_sale_requests.filter(
            AfterSaleRequest.status.in_(ACTIVE_AFTER_SALE_STATUSES)
        ).first()
        if existing is not None:
            raise ConflictError(
                'This order already has an open after-sale request',
                existing_id=existing.id,
                request_number=existing.request_number,
                status=existing.status.value)

        req = AfterSaleRequest(
            request_number=self._new_request_number(),
            order_id=order.id,
            customer_id=customer_id,
            seller_id=order.seller_id,
            request_type=request_type,
            subject=(subject or '').strip()
            or f'{request_type.value.title()} request',
            reason=reason,
            description=text,
            status=AfterSaleStatus.PENDING,
        )
        for item in evidence:
            req.evidence.append(AfterSaleEvidence(
                kind=item.kind,
                file_path=item.file_path,
                content_type=item.content_type,
                size_bytes=item.size_bytes,
            ))
        db.session.add(req)
        try:
            db.session.flush()
        except IntegrityError:
            # Lost the race to a concurrent submission for the same order.
            raise ConflictError(
                'This order already has an open after-sale request')

        log_audit(
            actor_id=customer_id,
            actor_role='CUSTOMER',
            action='AFTER_SALE_CREATE',
            target_type='AFTER_SALE_REQUEST',
            target_id=req.id,
            payload={
                'order_id': order.id,
                'request_number': req.request_number,
                'request_type': request_type.value,
                'videos': sum(
                    1 for e in evidence if e.kind == EvidenceKind.VIDEO),
                'photos': sum(
                    1 for e in evidence if e.kind == EvidenceKind.PHOTO),
            },
        )
        return req

    @transactional
    def respond(self, request_id, seller_id, response):
        req = self.get(request_id)
        if req.seller_id != seller_id:
            raise NotFoundError(
                'After-sale request not found', request_id=request_id)
        text = (response or '').strip()
        if len(text) < self.min_response_length:
            raise ValidationError(
                'Response must be at least '
                f'{self.min_response_length} characters',
                min_length=self.min_response_length)

        req = self._locked(request_id)
        if req.status != AfterSaleStatus.PENDING:
            raise InvalidStateError(
                'Only pending requests take seller responses',
                status=req.status.value)
        req.seller_response = text
        req.responded_at = datetime.utcnow()

        log_audit(
            actor_id=seller_id,
            actor_role='SELLER',
            action='AFTER_SALE_RESPOND',
            target_type='AFTER_SALE_REQUEST',
            target_id=req.id,
        )
        return req

    @transactional
    def approve(self, request_id, admin_id, notes=None):
        req = self.get(request_id)
        order = self.orders.lock(req.order_id)
        req = self._locked(request_id)
        if req.status == AfterSaleStatus.APPROVED:
            return req
        if req.status != AfterSaleStatus.PENDING:
            raise InvalidStateError(
                'Rejected requests cannot be approved',
                request_id=req.id)

        refund_amount = None
        if req.request_type.reverses_settlement:
            settlement = order.settlement
            if settlement is None:
                raise InvalidStateError(
                    'Order has no settlement to reverse', order_id=order.id)
            if settlement.status == TransactionStatus.SUCCEEDED:
                self.ledger.reverse_transaction(
                    settlement,
                    memo=f'{req.request_type.value} {req.request_number}')
            if req.request_type == AfterSaleType.RETURN:
                self.orders.restore_stock(order)
            self.orders.mark_returned(order.id)
            refund_amount = settlement.gross_amount
            self.outbox.enqueue(
                PAYMENT_REFUND,
                'ORDER',
                order.id,
                {
                    'order_id': order.id,
                    'order_number': order.order_number,
                    'amount': refund_amount,
                    'payment_method': order.payment_method.value,
                    'after_sale_request_id': req.id,
                    'reason': req.request_type.value,
                },
            )

        req.status = AfterSaleStatus.APPROVED
        req.decided_by = admin_id
        req.decided_at = datetime.utcnow()
        if notes:
            req.admin_notes = notes

        log_audit(
            actor_id=admin_id,
            actor_role='ADMIN',
            action='AFTER_SALE_APPROVE',
            target_type='AFTER_SALE_REQUEST',
            target_id=req.id,
            payload={
                'order_id': order.id,
                'request_type': req.request_type.value,
                'refund_amount': refund_amount,
            },
        )
        return req

    @transactional
    def reject(self, request_id, admin_id, notes=None):
        req = self.get(request_id)
        self.orders.lock(req.order_id)
        req = self._locked(request_id)
        if req.status == AfterSaleStatus.REJECTED:
            return req
        if req.status != AfterSaleStatus.PENDING:
            raise InvalidStateError(
                'Approved requests cannot be rejected',
                request_id=req.id)

        req.status = AfterSaleStatus.REJECTED
        req.decided_by = admin_id
        req.decided_at = datetime.utcnow()
        if notes:
            req.admin_notes = notes

        log_audit(
            actor_id=admin_id,
            actor_role='ADMIN',
            action='AFTER_SALE_REJECT',
            target_type='AFTER_SALE_REQUEST',
            target_id=req.id,
            payload={'order_id': req.order_id, 'notes': notes},
        )
        return req

    def _locked(self, request_id):
        return (
            AfterSaleRequest.query
            .filter_by(id=request_id)
            .with_for_update()
            .populate_existing()
            .one()
        )

    @staticmethod
    def _new_request_number():
        while True:
            suffix = ''.join(
                secrets.choice(_REQUEST_NUMBER_ALPHABET) for _ in range(6))
            candidate = f'ASR-{suffix}'
            if AfterSaleRequest.query.filter_by(
                    request_number=candidate).first() is None:
                return candidate
