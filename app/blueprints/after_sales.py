from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from werkzeug.utils import secure_filename
from app.errors import NotFoundError, ValidationError
from app.middleware import role_required
from app.models import EvidenceKind, UserRole
from app.services.after_sale_service import EvidenceFile
from app.services.fulfillment import get_services
from app.utils import after_sale_to_dict, json_body
import logging
import os
import uuid

logger = logging.getLogger(__name__)

bp = Blueprint('after_sales', __name__)

VIDEO_EXTENSIONS = ('mp4', 'mov', 'webm')
IMAGE_EXTENSIONS = ('jpg', 'jpeg', 'png', 'webp')


def _extension(upload, allowed, label):
    filename = secure_filename(upload.filename or '')
    ext = (filename.rsplit('.', 1)[-1] if '.' in filename else '').lower()
    if ext not in allowed:
        raise ValidationError(
            f"Unsupported {label} type ({'/'.join(allowed)} only)")
    return ext


def _size(upload):
    stream = upload.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def _collect_uploads(order_id):
    """Pair each uploaded file with the evidence row it will become."""
    rel_dir = os.path.join('after_sales', str(order_id))
    pending = []

    uploads = [(EvidenceKind.VIDEO, f) for f in request.files.getlist('video')]
    uploads += [
        (EvidenceKind.PHOTO, f) for f in request.files.getlist('images')]
    for kind, upload in uploads:
        if not upload or not upload.filename:
            continue
        if kind == EvidenceKind.VIDEO:
            ext = _extension(upload, VIDEO_EXTENSIONS, 'video')
        else:
            ext = _extension(upload, IMAGE_EXTENSIONS, 'image')
        new_name = f"{kind.value.lower()}_{uuid.uuid4().hex}.{ext}"
        evidence = EvidenceFile(
            kind=kind,
            file_path=f"{rel_dir}/{new_name}".replace('\\', '/'),
            content_type=upload.mimetype,
            size_bytes=_size(upload),
        )
        pending.append((upload, evidence))
    return pending


def _remove_files(paths):
    for abs_path in paths:
        try:
            os.remove(abs_path)
        except OSError:
            logger.warning("Could not remove orphaned upload %s", abs_path)


@bp.route('/api/orders/<int:order_id>/after-sales', methods=['POST'])
@login_required
@role_required('CUSTOMER')
def create_after_sale(order_id):
    form = request.form
    cases = get_services().after_sales
    pending = _collect_uploads(order_id)
    evidence = [e for _, e in pending]

    # Reject bad submissions before anything touches the disk.
    cases.validate_submission(
        form.get('request_type'), form.get('description'), evidence)

    upload_root = current_app.config['UPLOAD_FOLDER']
    saved = []
    try:
        for upload, item in pending:
            abs_path = os.path.join(upload_root, item.file_path)
            os.makedirs(os.path.dirname(abs_path), exist_ok=True)
            upload.save(abs_path)
            saved.append(abs_path)

        req = cases.open(
            order_id,
            current_user.id,
            form.get('request_type'),
            form.get('description'),
            evidence=evidence,
            subject=form.get('subject'),
            reason=form.get('reason'),
        )
    except Exception:
        _remove_files(saved)
        raise

    return jsonify({
        'ok': True,
        'after_sale': after_sale_to_dict(req),
    }), 201


@bp.route('/api/after-sales/<int:request_id>', methods=['GET'])
@login_required
def after_sale_detail(request_id):
    req = get_services().after_sales.get(request_id)
    role = current_user.role
    visible = (
        role == UserRole.ADMIN
        or (role == UserRole.CUSTOMER and req.customer_id == current_user.id)
        or (role == UserRole.SELLER and req.seller_id == current_user.id)
    )
    if not visible:
        raise NotFoundError(
            'After-sale request not found', request_id=request_id)
    return jsonify({'after_sale': after_sale_to_dict(req)})


@bp.route('/api/seller/after-sales/<int:request_id>/respond',
          methods=['POST'])
@login_required
@role_required('SELLER')
def respond(request_id):
    data = json_body()
    req = get_services().after_sales.respond(
        request_id, current_user.id, data.get('response'))
    return jsonify({'ok': True, 'after_sale': after_sale_to_dict(req)})


@bp.route('/api/admin/after-sales/<int:request_id>/approve', methods=['POST'])
@login_required
@role_required('ADMIN')
def approve(request_id):
    data = json_body()
    req = get_services().after_sales.approve(
        request_id, current_user.id, notes=data.get('notes'))
    return jsonify({
        'ok': True,
        'new_status': req.status.value,
        'order_status': req.order.status.value,
    })


@bp.route('/api/admin/after-sales/<int:request_id>/reject', methods=['POST'])
@login_required
@role_required('ADMIN')
def reject(request_id):
    data = json_body()
    req = get_services().after_sales.reject(
        request_id, current_user.id, notes=data.get('notes'))
    return jsonify({'ok': True, 'new_status': req.status.value})
