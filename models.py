"""
Marketplace Value-Transfer Core - Database Schema
=================================================

Schema for the parts of the marketplace that move value:
- Per-vendor orders with an embedded on-chain escrow record
- Threaded disputes with expiring image evidence
- Token burns and the fiat payouts they fund
- Encrypted per-user signing keys and bank accounts

Catalogue, cart and user tables are kept minimal: the core reads and
updates them but does not own their lifecycle.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class OrderStatus(Enum):
    """Order and vendor sub-order lifecycle states"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"
    CRYPTO = "crypto"


class EscrowState(Enum):
    """On-chain escrow contract states (contract enum order)"""
    LOCKED = "Locked"
    RELEASE_PENDING = "ReleasePending"
    DISPUTED = "Disputed"
    COMPLETE = "Complete"
    REFUNDED = "Refunded"


class EscrowAction(Enum):
    """In-flight escrow transition markers"""
    CREATE = "create"
    CONFIRM_DELIVERY = "confirmDelivery"
    RELEASE_FUNDS = "releaseFunds"
    RAISE_DISPUTE = "raiseDispute"
    RESOLVE_DISPUTE = "resolveDispute"


class EscrowTransactionType(Enum):
    CREATED = "created"
    DELIVERY_CONFIRMED = "deliveryConfirmed"
    FUNDS_RELEASED = "fundsReleased"
    DISPUTE_RAISED = "disputeRaised"
    DISPUTE_RESOLVED = "disputeResolved"
    TIMEOUT_CLAIMED = "timeoutClaimed"
    RECONCILED = "reconciled"


class CouponType(Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"


class DisputeStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputePriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DisputeWinner(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class DisputeRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class BurnStatus(Enum):
    """Token burn lifecycle"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PayoutStatus(Enum):
    """Fiat payout lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"
    PENDING_MANUAL = "pending_manual"


class BankAccountType(Enum):
    SAVINGS = "savings"
    CURRENT = "current"


class PayoutErrorCode(Enum):
    """Unified payout provider error codes for retry classification"""
    API_TIMEOUT = "api_timeout"
    API_AUTHENTICATION_FAILED = "api_authentication_failed"
    API_INVALID_REQUEST = "api_invalid_request"
    API_INSUFFICIENT_FUNDS = "api_insufficient_funds"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    NETWORK_ERROR = "network_error"
    INVALID_BANK_ACCOUNT = "invalid_bank_account"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN_ERROR = "unknown_error"


# Sentinel stored in BurnRecord.tx_hash until the burn broadcast returns a hash
PENDING_TX_HASH = "pending"


def _enum_check(column: str, enum_cls, name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


# ============================================================================
# IDENTITY AND CATALOGUE (read mostly)
# ============================================================================

class User(Base):
    """Marketplace account with optional vendor sub-profile"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.CUSTOMER.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Vendor sub-profile
    business_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("5.00"), nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    key_record: Mapped[Optional["KeyRecord"]] = relationship("KeyRecord", back_populates="user", uselist=False)
    bank_details: Mapped[list["BankDetail"]] = relationship("BankDetail", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_vendor(self) -> bool:
        return self.role == UserRole.VENDOR.value

    @property
    def can_transact_as_vendor(self) -> bool:
        return self.is_vendor and self.is_active and self.is_approved

    __table_args__ = (
        _enum_check('role', UserRole, 'ck_users_role_valid'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, role='{self.role}')>"


class KeyRecord(Base):
    """Encrypted per-user signing key (AES-256-GCM, immutable after creation)"""
    __tablename__ = 'key_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    address = Column(String(42), nullable=False)  # lowercase 0x hex
    encrypted_key_iv = Column(String(24), nullable=False)
    encrypted_key_tag = Column(String(32), nullable=False)
    encrypted_key_data = Column(Text, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    user = relationship("User", back_populates="key_record")

    __table_args__ = (
        UniqueConstraint('user_id', name='uq_key_records_user'),
        UniqueConstraint('address', name='uq_key_records_address'),
    )

    def __repr__(self):
        return f"<KeyRecord(user_id={self.user_id}, address='{self.address}')>"


class Category(Base):
    __tablename__ = 'categories'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)


class Product(Base):
    """Vendor product; quantity is only moved by conditional updates"""
    __tablename__ = 'products'

    id = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey('categories.id'), nullable=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    track_quantity = Column(Boolean, default=True, nullable=False)
    quantity = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    vendor = relationship("User")

    __table_args__ = (
        CheckConstraint('quantity >= 0', name='ck_products_quantity_non_negative'),
        CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
    )


class Coupon(Base):
    __tablename__ = 'coupons'

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)  # stored uppercase
    type = Column(String(20), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    minimum_amount = Column(Numeric(12, 2), default=0, nullable=False)
    maximum_discount = Column(Numeric(12, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0, nullable=False)
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        _enum_check('type', CouponType, 'ck_coupons_type_valid'),
        CheckConstraint('used_count >= 0', name='ck_coupons_used_count_non_negative'),
    )


class Cart(Base):
    __tablename__ = 'carts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    items = Column(JSON, default=list, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)


# ============================================================================
# ORDERS AND ESCROW
# ============================================================================

class Order(Base):
    """Per-vendor order with embedded escrow record"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    customer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    shipping_address = Column(JSON, nullable=False)
    billing_address = Column(JSON, nullable=False)

    # Monetary fields, quantized to 2 decimals
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), default=0, nullable=False)
    shipping = Column(Numeric(12, 2), default=0, nullable=False)
    discount = Column(Numeric(12, 2), default=0, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)

    payment_method = Column(String(30), nullable=False)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    coupon_code = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    # Embedded escrow record
    escrow_address = Column(String(42), nullable=True, index=True)
    escrow_status = Column(String(20), nullable=True)
    escrow_buyer_address = Column(String(42), nullable=True)
    escrow_seller_address = Column(String(42), nullable=True)
    escrow_amount = Column(String(80), nullable=True)  # wei as decimal string
    escrow_created_at = Column(DateTime, nullable=True)
    escrow_pending_action = Column(String(30), nullable=True)
    escrow_pending_since = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)

    customer = relationship("User", foreign_keys=[customer_id])
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    vendor_order = relationship("VendorOrder", back_populates="order", uselist=False, cascade="all, delete-orphan")
    escrow_transactions = relationship(
        "EscrowTransaction", back_populates="order", cascade="all, delete-orphan",
        order_by="EscrowTransaction.id"
    )

    @property
    def vendor_id(self) -> Optional[int]:
        return self.vendor_order.vendor_id if self.vendor_order else None

    __table_args__ = (
        _enum_check('status', OrderStatus, 'ck_orders_status_valid'),
        _enum_check('payment_status', PaymentStatus, 'ck_orders_payment_status_valid'),
        _enum_check('payment_method', PaymentMethod, 'ck_orders_payment_method_valid'),
        CheckConstraint(
            "escrow_status IS NULL OR escrow_status IN "
            f"({', '.join(repr(s.value) for s in EscrowState)})",
            name='ck_orders_escrow_status_valid'
        ),
        CheckConstraint('total >= 0', name='ck_orders_total_non_negative'),
        Index('ix_orders_customer_status', 'customer_id', 'status'),
        Index('ix_orders_escrow_status', 'escrow_status'),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', status='{self.status}')>"


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False)
    vendor_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    variant = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
    )


class VendorOrder(Base):
    """The single vendor sub-order of a split order; status moves in lockstep with Order"""
    __tablename__ = 'vendor_orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    vendor_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    vendor_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="vendor_order")

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_vendor_orders_order'),
        _enum_check('status', OrderStatus, 'ck_vendor_orders_status_valid'),
    )


class EscrowTransaction(Base):
    """Append-only escrow transaction log"""
    __tablename__ = 'escrow_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    tx_hash = Column(String(66), nullable=True)
    block_number = Column(Integer, nullable=True)
    by_user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    winner = Column(String(10), nullable=True)
    timestamp = Column(DateTime, default=get_naive_utc_now, nullable=False)

    order = relationship("Order", back_populates="escrow_transactions")

    __table_args__ = (
        _enum_check('type', EscrowTransactionType, 'ck_escrow_transactions_type_valid'),
    )


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Threaded dispute over a single order"""
    __tablename__ = 'disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    buyer_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    raised_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    raised_by_role = Column(String(10), nullable=False)
    reason = Column(String(1000), nullable=False)
    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    priority = Column(String(10), default=DisputePriority.MEDIUM.value, nullable=False)
    assigned_admin_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    # Terminal resolution
    resolution_winner = Column(String(10), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    last_activity = Column(DateTime, default=get_naive_utc_now, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    order = relationship("Order")
    messages = relationship(
        "DisputeMessage", back_populates="dispute", cascade="all, delete-orphan",
        order_by="DisputeMessage.id"
    )

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_disputes_order'),
        _enum_check('status', DisputeStatus, 'ck_disputes_status_valid'),
        _enum_check('priority', DisputePriority, 'ck_disputes_priority_valid'),
        CheckConstraint(
            "resolution_winner IS NULL OR resolution_winner IN ('buyer', 'seller')",
            name='ck_disputes_winner_valid'
        ),
        Index('ix_disputes_status_priority', 'status', 'priority'),
    )


class DisputeMessage(Base):
    __tablename__ = 'dispute_messages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(Integer, ForeignKey('disputes.id'), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    sender_role = Column(String(10), nullable=False)
    content = Column(Text, nullable=True)
    read_by = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="messages")
    attachments = relationship("DisputeAttachment", back_populates="message", cascade="all, delete-orphan")

    __table_args__ = (
        _enum_check('sender_role', DisputeRole, 'ck_dispute_messages_role_valid'),
    )


class DisputeAttachment(Base):
    """Image evidence stored under a random filename, expiring after a fixed TTL"""
    __tablename__ = 'dispute_attachments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey('dispute_messages.id'), nullable=False, index=True)
    filename = Column(String(100), nullable=False, unique=True)
    original_name = Column(String(255), nullable=True)
    mime_type = Column(String(50), nullable=False)
    size = Column(Integer, nullable=False)
    uploaded_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    message = relationship("DisputeMessage", back_populates="attachments")


# ============================================================================
# BURN AND PAYOUT
# ============================================================================

class BankDetail(Base):
    """User bank account for INR payouts"""
    __tablename__ = 'bank_details'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    account_holder_name = Column(String(100), nullable=False)
    account_number = Column(String(20), nullable=False)
    account_number_last4 = Column(String(4), nullable=False)
    ifsc_code = Column(String(11), nullable=False)
    bank_name = Column(String(100), nullable=False)
    account_type = Column(String(10), default=BankAccountType.SAVINGS.value, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Provider-side identifiers, created lazily on first payout
    provider_contact_id = Column(String(50), nullable=True)
    provider_fund_account_id = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user = relationship("User", back_populates="bank_details")

    __table_args__ = (
        _enum_check('account_type', BankAccountType, 'ck_bank_details_type_valid'),
        Index(
            'uq_bank_details_user_active_default', 'user_id', unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default = 1 AND is_active = 1"),
        ),
    )


class BurnRecord(Base):
    """Durable record of a token burn; tx_hash holds the sentinel until broadcast"""
    __tablename__ = 'burn_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    bank_detail_id = Column(Integer, ForeignKey('bank_details.id'), nullable=True)
    amount_usd = Column(Numeric(12, 2), nullable=False)
    amount_wei = Column(String(80), nullable=False)
    from_address = Column(String(42), nullable=False)
    tx_hash = Column(String(66), default=PENDING_TX_HASH, nullable=False, index=True)
    block_number = Column(Integer, nullable=True)
    status = Column(String(20), default=BurnStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    payout_id = Column(Integer, nullable=True)  # back-reference, set once a payout exists
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user = relationship("User")
    bank_detail = relationship("BankDetail")

    @property
    def has_tx_hash(self) -> bool:
        return bool(self.tx_hash) and self.tx_hash != PENDING_TX_HASH

    __table_args__ = (
        _enum_check('status', BurnStatus, 'ck_burn_records_status_valid'),
        CheckConstraint('amount_usd >= 10', name='ck_burn_records_min_amount'),
        Index('ix_burn_records_status_created', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<BurnRecord(id={self.id}, status='{self.status}', tx='{self.tx_hash}')>"


class Payout(Base):
    """Fiat payout funded by exactly one confirmed burn"""
    __tablename__ = 'payouts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    burn_record_id = Column(Integer, ForeignKey('burn_records.id'), nullable=False)
    bank_detail_id = Column(Integer, ForeignKey('bank_details.id'), nullable=True)

    amount_usd = Column(Numeric(12, 2), nullable=False)
    amount_inr = Column(Numeric(14, 2), nullable=False)
    exchange_rate = Column(Numeric(10, 4), nullable=False)

    provider_payout_id = Column(String(50), nullable=True, index=True)
    provider_fund_account_id = Column(String(50), nullable=True)
    provider_status = Column(String(30), nullable=True)

    status = Column(String(20), default=PayoutStatus.PENDING.value, nullable=False)
    utr = Column(String(50), nullable=True)
    failure_reason = Column(Text, nullable=True)
    initiated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    payout_metadata = Column('metadata', JSON, nullable=True)

    # Manual processing
    manual_processed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    manual_processed_at = Column(DateTime, nullable=True)
    manual_utr = Column(String(50), nullable=True)
    manual_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user = relationship("User", foreign_keys=[user_id])
    burn_record = relationship("BurnRecord")
    bank_detail = relationship("BankDetail")
    audit_entries = relationship(
        "PayoutAuditEntry", back_populates="payout", cascade="all, delete-orphan",
        order_by="PayoutAuditEntry.id"
    )

    __table_args__ = (
        UniqueConstraint('burn_record_id', name='uq_payouts_burn_record'),
        _enum_check('status', PayoutStatus, 'ck_payouts_status_valid'),
        Index('ix_payouts_status_updated', 'status', 'updated_at'),
    )

    def __repr__(self):
        return f"<Payout(id={self.id}, status='{self.status}', burn={self.burn_record_id})>"


class PayoutAuditEntry(Base):
    """Append-only payout audit trail"""
    __tablename__ = 'payout_audit_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_id = Column(Integer, ForeignKey('payouts.id'), nullable=False, index=True)
    note = Column(Text, nullable=False)
    added_by = Column(Integer, ForeignKey('users.id'), nullable=True)  # NULL for webhook/system entries
    source = Column(String(20), default='admin', nullable=False)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    event_id = Column(String(255), nullable=True)
    added_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    payout = relationship("Payout", back_populates="audit_entries")


class WebhookEventLedger(Base):
    """Webhook event ledger for idempotent provider callbacks"""
    __tablename__ = 'webhook_event_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    status = Column(String(50), default='processing', nullable=False, index=True)
    processing_result = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_duration_ms = Column(Integer, nullable=True)
    processed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
        Index('ix_webhook_event_ledger_provider_status', 'event_provider', 'status'),
    )
