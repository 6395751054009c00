from app.extensions import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import CheckConstraint, UniqueConstraint, text
import enum
import json


class UserRole(enum.Enum):
    CUSTOMER = 'CUSTOMER'
    SELLER = 'SELLER'
    ADMIN = 'ADMIN'


class ProductStatus(enum.Enum):
    DRAFT = 'DRAFT'
    ACTIVE = 'ACTIVE'
    SUSPENDED = 'SUSPENDED'


class OrderStatus(enum.Enum):
    PENDING_PAYMENT = 'PENDING_PAYMENT'
    PROCESSING = 'PROCESSING'
    PACKING = 'PACKING'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'
    PAYMENT_FAILED = 'PAYMENT_FAILED'
    CANCELLED = 'CANCELLED'
    RETURNED = 'RETURNED'


class PaymentStatus(enum.Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    FAILED = 'FAILED'


class PaymentMethod(enum.Enum):
    COD = 'COD'
    GCASH = 'GCASH'
    PAYMAYA = 'PAYMAYA'
    CARD = 'CARD'

    @property
    def is_cash_on_delivery(self):
        return self is PaymentMethod.COD


class ShippingStatus(enum.Enum):
    PACKING = 'PACKING'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'


class TransactionStatus(enum.Enum):
    SUCCEEDED = 'SUCCEEDED'
    REVERSED = 'REVERSED'


class BalanceEntryType(enum.Enum):
    CREDIT = 'CREDIT'
    RELEASE = 'RELEASE'
    DEBIT = 'DEBIT'


class AfterSaleType(enum.Enum):
    RETURN = 'RETURN'
    EXCHANGE = 'EXCHANGE'
    REFUND = 'REFUND'
    SUPPORT = 'SUPPORT'

    @property
    def reverses_settlement(self):
        return self in (AfterSaleType.RETURN, AfterSaleType.REFUND)


class AfterSaleStatus(enum.Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


# Requests in these statuses block a new request for the same order.
ACTIVE_AFTER_SALE_STATUSES = (AfterSaleStatus.PENDING, AfterSaleStatus.APPROVED)


class EvidenceKind(enum.Enum):
    VIDEO = 'VIDEO'
    PHOTO = 'PHOTO'


class OutboxStatus(enum.Enum):
    PENDING = 'PENDING'
    SENT = 'SENT'
    FAILED = 'FAILED'


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=True)
    role = db.Column(
        db.Enum(UserRole),
        nullable=False,
        default=UserRole.CUSTOMER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    seller_profile = db.relationship(
        'SellerProfile',
        backref='user',
        uselist=False,
        cascade='all, delete-orphan')
    addresses = db.relationship(
        'Address',
        backref='user',
        lazy='dynamic',
        cascade='all, delete-orphan')

    def default_address(self):
        return self.addresses.order_by(
            Address.is_default.desc(), Address.id.desc()).first()

    def __repr__(self):
        return f'<User {self.email}>'


class SellerProfile(db.Model):
    __tablename__ = 'seller_profiles'

    user_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        primary_key=True)
    shop_name = db.Column(db.String(100), unique=True, nullable=False)
    contact_phone = db.Column(db.String(20), nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    def __repr__(self):
        return f'<SellerProfile {self.shop_name}>'


class Address(db.Model):
    __tablename__ = 'addresses'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    recipient_name = db.Column(db.String(50), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    province = db.Column(db.String(50), nullable=False)
    city = db.Column(db.String(50), nullable=False)
    district = db.Column(db.String(50), nullable=True)
    detail_address = db.Column(db.Text, nullable=False)
    postal_code = db.Column(db.String(10), nullable=True)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    @property
    def full_address_text(self):
        parts = [
            self.detail_address,
            self.district,
            self.city,
            self.province,
            self.postal_code,
        ]
        return ', '.join(p for p in parts if p)

    def __repr__(self):
        return f'<Address {self.id} for user {self.user_id}>'


class Product(db.Model):
    __tablename__ = 'products'

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    title = db.Column(db.String(200), nullable=False)
    # Price in minor currency units (centavos).
    price_minor = db.Column(db.Integer, nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(ProductStatus),
        default=ProductStatus.ACTIVE,
        nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    seller = db.relationship('User', foreign_keys=[seller_id])

    __table_args__ = (
        CheckConstraint('price_minor >= 0', name='check_price_non_negative'),
        CheckConstraint('stock >= 0', name='check_stock_non_negative'),
    )

    @property
    def is_published(self):
        return self.status == ProductStatus.ACTIVE

    def __repr__(self):
        return f'<Product {self.title}>'


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(
        db.String(32),
        unique=True,
        nullable=False,
        index=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    # Sum of item subtotals, fixed at creation.
    total_amount = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(OrderStatus),
        default=OrderStatus.PENDING_PAYMENT,
        nullable=False,
        index=True)
    payment_status = db.Column(
        db.Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False)
    payment_method = db.Column(db.Enum(PaymentMethod), nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    returned_at = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship('User', foreign_keys=[customer_id])
    seller = db.relationship('User', foreign_keys=[seller_id])
    items = db.relationship(
        'OrderItem',
        backref='order',
        order_by='OrderItem.id',
        cascade='all, delete-orphan')
    shipping = db.relationship(
        'Shipping',
        backref='order',
        uselist=False,
        cascade='all, delete-orphan')
    settlement = db.relationship(
        'Transaction',
        backref='order',
        uselist=False)
    after_sale_requests = db.relationship(
        'AfterSaleRequest',
        backref='order',
        lazy='dynamic')

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        CheckConstraint('total_amount > 0', name='check_order_total_positive'),
    )

    def __repr__(self):
        return f'<Order {self.order_number} status={self.status}>'


class OrderItem(db.Model):
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey('products.id'),
        nullable=False,
        index=True)
    # Snapshot at order time.
    product_title = db.Column(db.String(200), nullable=False)
    unit_price_minor = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    subtotal_minor = db.Column(db.Integer, nullable=False)

    product = db.relationship('Product')

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_order_quantity_positive'),
        CheckConstraint(
            'subtotal_minor = quantity * unit_price_minor',
            name='check_order_item_subtotal'),
    )

    def __repr__(self):
        return (
            f"<OrderItem {self.id} order={self.order_id} "
            f"product={self.product_id}>"
        )


class Shipping(db.Model):
    __tablename__ = 'shippings'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        unique=True,
        nullable=False)
    tracking_number = db.Column(
        db.String(40),
        unique=True,
        nullable=False,
        index=True)
    carrier_name = db.Column(db.String(100), nullable=True)
    rider_name = db.Column(db.String(100), nullable=True)
    rider_phone = db.Column(db.String(20), nullable=True)
    rider_email = db.Column(db.String(120), nullable=True)
    vehicle_type = db.Column(db.String(50), nullable=True)
    vehicle_number = db.Column(db.String(50), nullable=True)

    # Delivery address copied from the customer's directory entry.
    recipient_name = db.Column(db.String(50), nullable=True)
    recipient_phone = db.Column(db.String(20), nullable=True)
    delivery_address = db.Column(db.Text, nullable=False)
    delivery_city = db.Column(db.String(50), nullable=True)
    delivery_province = db.Column(db.String(50), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)
    estimated_delivery = db.Column(db.DateTime, nullable=True)

    status = db.Column(
        db.Enum(ShippingStatus),
        default=ShippingStatus.PACKING,
        nullable=False)
    assigned_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    histories = db.relationship(
        'ShippingHistory',
        backref='shipping',
        order_by='ShippingHistory.id',
        cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Shipping {self.tracking_number} status={self.status}>'


class ShippingHistory(db.Model):
    __tablename__ = 'shipping_histories'

    id = db.Column(db.Integer, primary_key=True)
    shipping_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'shippings.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    status = db.Column(db.Enum(ShippingStatus), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(200), nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False)

    def __repr__(self):
        return f'<ShippingHistory {self.id} status={self.status}>'


class Transaction(db.Model):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey('orders.id'),
        unique=True,
        nullable=False)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    gross_amount = db.Column(db.Integer, nullable=False)
    admin_fee = db.Column(db.Integer, nullable=False)
    seller_amount = db.Column(db.Integer, nullable=False)
    commission_rate_bps = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(TransactionStatus),
        default=TransactionStatus.SUCCEEDED,
        nullable=False)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)
    released_at = db.Column(db.DateTime, nullable=True)
    reversed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            'admin_fee + seller_amount = gross_amount',
            name='check_transaction_split_sums'),
        CheckConstraint('gross_amount > 0', name='check_transaction_gross'),
        db.Index('idx_transaction_seller_status', 'seller_id', 'status'),
    )

    def __repr__(self):
        return f'<Transaction {self.id} order={self.order_id} {self.status}>'


class SellerBalance(db.Model):
    __tablename__ = 'seller_balances'

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='CASCADE'),
        unique=True,
        nullable=False)
    available_balance = db.Column(db.Integer, nullable=False, default=0)
    pending_balance = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        CheckConstraint(
            'available_balance >= 0 AND pending_balance >= 0',
            name='check_balance_non_negative'),
    )

    def __repr__(self):
        return (
            f"<SellerBalance seller={self.seller_id} "
            f"available={self.available_balance} "
            f"pending={self.pending_balance}>"
        )


class BalanceEntry(db.Model):
    __tablename__ = 'balance_entries'

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    entry_type = db.Column(db.Enum(BalanceEntryType), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    pending_delta = db.Column(db.Integer, nullable=False)
    available_delta = db.Column(db.Integer, nullable=False)
    transaction_id = db.Column(
        db.Integer,
        db.ForeignKey('transactions.id'),
        nullable=True,
        index=True)
    memo = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='check_balance_entry_amount'),
    )

    def __repr__(self):
        return (
            f"<BalanceEntry {self.id} {self.entry_type} "
            f"seller={self.seller_id} amount={self.amount}>"
        )


class AfterSaleRequest(db.Model):
    __tablename__ = 'after_sale_requests'

    id = db.Column(db.Integer, primary_key=True)
    request_number = db.Column(
        db.String(20),
        unique=True,
        nullable=False,
        index=True)
    order_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'orders.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    seller_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=False,
        index=True)
    request_type = db.Column(db.Enum(AfterSaleType), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.Enum(AfterSaleStatus),
        default=AfterSaleStatus.PENDING,
        nullable=False)
    seller_response = db.Column(db.Text, nullable=True)
    responded_at = db.Column(db.DateTime, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    decided_by = db.Column(
        db.Integer,
        db.ForeignKey('users.id'),
        nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    updated_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False)

    evidence = db.relationship(
        'AfterSaleEvidence',
        backref='request',
        order_by='AfterSaleEvidence.id',
        cascade='all, delete-orphan')

    __table_args__ = (
        # At most one unresolved request per order.
        db.Index(
            'uq_after_sale_active_order',
            'order_id',
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
            postgresql_where=text("status IN ('PENDING', 'APPROVED')")),
    )

    def __repr__(self):
        return (
            f"<AfterSaleRequest {self.request_number} "
            f"type={self.request_type} status={self.status}>"
        )


class AfterSaleEvidence(db.Model):
    __tablename__ = 'after_sale_evidence'

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'after_sale_requests.id',
            ondelete='CASCADE'),
        nullable=False,
        index=True)
    kind = db.Column(db.Enum(EvidenceKind), nullable=False)
    # Relative path under UPLOAD_FOLDER
    file_path = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<AfterSaleEvidence {self.id} {self.kind}>'


class OutboxAction(db.Model):
    __tablename__ = 'outbox_actions'

    id = db.Column(db.Integer, primary_key=True)
    action_type = db.Column(db.String(50), nullable=False, index=True)
    aggregate_type = db.Column(db.String(50), nullable=False)
    aggregate_id = db.Column(db.Integer, nullable=False, index=True)
    payload_json = db.Column(db.Text, nullable=False, default='{}')
    status = db.Column(
        db.Enum(OutboxStatus),
        default=OutboxStatus.PENDING,
        nullable=False,
        index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False)
    sent_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            'action_type',
            'aggregate_type',
            'aggregate_id',
            name='uq_outbox_action_per_aggregate'),
    )

    def set_payload(self, data):
        self.payload_json = json.dumps(data, ensure_ascii=False)

    def get_payload(self):
        if self.payload_json:
            return json.loads(self.payload_json)
        return {}

    def __repr__(self):
        return f'<OutboxAction {self.id} {self.action_type} {self.status}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(
        db.Integer,
        db.ForeignKey(
            'users.id',
            ondelete='SET NULL'),
        nullable=True)
    actor_role = db.Column(db.String(20), nullable=False)
    # e.g., ORDER_CANCEL, AFTER_SALE_APPROVE
    action = db.Column(db.String(100), nullable=False)
    # ORDER, SHIPPING, AFTER_SALE_REQUEST, SELLER_BALANCE, etc.
    target_type = db.Column(db.String(50), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    # JSON format key field snapshot
    payload_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime,
        default=datetime.utcnow,
        nullable=False,
        index=True)

    actor = db.relationship('User', foreign_keys=[actor_id])

    def set_payload(self, data):
        self.payload_json = json.dumps(data, ensure_ascii=False)

    def get_payload(self):
        if self.payload_json:
            return json.loads(self.payload_json)
        return {}
