from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# Catalog (owned by event management, read-only here)
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    # draft | published | cancelled | ended
    status = Column(String, nullable=False, default="draft")
    currency = Column(String, nullable=False, default="EUR")
    created_at = Column(Float, nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)  # cents
    capacity_total = Column(Integer, nullable=True)  # NULL = unlimited
    max_per_order = Column(Integer, nullable=True)
    sales_start = Column(Float, nullable=True)
    sales_end = Column(Float, nullable=True)
    # draft | published | hidden
    status = Column(String, nullable=False, default="published")
    deleted_at = Column(Float, nullable=True)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="merchandise")
    price = Column(Integer, nullable=False, default=0)  # cents, VAT incl.
    vat_percentage = Column(Integer, nullable=False, default=0)
    capacity_total = Column(Integer, nullable=True)
    max_per_order = Column(Integer, nullable=True)
    sales_start = Column(Float, nullable=True)
    sales_end = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(Float, nullable=True)


class ProductVariant(Base):
    __tablename__ = "product_variants"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False,
                        index=True)
    name = Column(String, nullable=False)
    capacity_total = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class ProductTicketRestriction(Base):
    __tablename__ = "product_ticket_restrictions"
    product_id = Column(String, ForeignKey("products.id"), primary_key=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            primary_key=True)


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    __table_args__ = (UniqueConstraint("event_id", "code"),)
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    code = Column(String, nullable=False)
    amount_off = Column(Integer, nullable=True)  # cents
    percent_off = Column(Integer, nullable=True)  # 0..100
    is_active = Column(Boolean, nullable=False, default=True)


# ----------------------------
# Orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total"),
        Index("ix_orders_status_created", "status", "created_at"),
    )
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=False, index=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=True)
    email = Column(String, nullable=False)
    purchaser_name = Column(String, nullable=True)

    # pending | paid | failed | cancelled | overbooked
    status = Column(String, nullable=False, default="pending")
    subtotal_amount = Column(Integer, nullable=False)  # cents
    discount_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    discount_code_id = Column(String, nullable=True)

    # sha256 hex of the guest access token, the token itself is never stored
    access_token_hash = Column(String, nullable=True, unique=True)
    access_token_issued_at = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint(
            "(ticket_type_id IS NOT NULL AND product_id IS NULL) OR "
            "(ticket_type_id IS NULL AND product_id IS NOT NULL)",
            name="ck_order_items_one_kind",
        ),
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=True, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=True,
                        index=True)
    variant_id = Column(String, ForeignKey("product_variants.id"),
                        nullable=True, index=True)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents, captured at order
    line_total = Column(Integer, nullable=False)
    vat_percentage = Column(Integer, nullable=False, default=0)
    vat_amount = Column(Integer, nullable=False, default=0)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    provider = Column(String, nullable=False)
    provider_payment_id = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    # open | pending | authorized | paid | failed | canceled | expired
    status = Column(String, nullable=False, default="open")
    checkout_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PaymentEvent(Base):
    """Processed-notification ledger. One row per (provider, event key)."""
    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id",
                         name="uq_payment_events_provider_event"),
    )
    id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    provider_event_id = Column(String, nullable=False)
    provider_object_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    outcome = Column(String, nullable=True)
    received_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)


# ----------------------------
# Tickets
# ----------------------------
class TicketInstance(Base):
    __tablename__ = "ticket_instances"
    __table_args__ = (
        UniqueConstraint("order_item_id", "sequence_no",
                         name="uq_ticket_instances_item_seq"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False)
    sequence_no = Column(Integer, nullable=False)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False, index=True)
    owner_user_id = Column(String, nullable=True)
    # issued | checked_in | void
    status = Column(String, nullable=False, default="issued")
    scan_token_hash = Column(String, nullable=False, unique=True)
    scan_token_preview = Column(String, nullable=False)
    issued_at = Column(Float, nullable=False)
    checked_in_at = Column(Float, nullable=True)
    voided_at = Column(Float, nullable=True)
    void_reason = Column(String, nullable=True)


# ----------------------------
# Refunds
# ----------------------------
class Refund(Base):
    __tablename__ = "refunds"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=False, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False)
    provider_payment_id = Column(String, nullable=False)
    provider_refund_id = Column(String, nullable=True, unique=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    # pending | queued | processing | refunded | failed | canceled
    status = Column(String, nullable=False, default="pending")
    reason = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    is_full_refund = Column(Boolean, nullable=False, default=False)
    tickets_voided = Column(Boolean, nullable=False, default=False)
    notification_sent = Column(Boolean, nullable=False, default=False)
    created_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    refunded_at = Column(Float, nullable=True)


class RefundItem(Base):
    __tablename__ = "refund_items"
    __table_args__ = (
        UniqueConstraint("refund_id", "order_item_id",
                         name="uq_refund_items_refund_item"),
    )
    id = Column(String, primary_key=True)
    refund_id = Column(String, ForeignKey("refunds.id"), nullable=False,
                       index=True)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False)
    ticket_instance_id = Column(String, ForeignKey("ticket_instances.id"),
                                nullable=True)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)


# ----------------------------
# Side channels
# ----------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=True, index=True)
    actor_user_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    id = Column(String, primary_key=True)
    org_id = Column(String, nullable=True)
    recipient = Column(String, nullable=False)
    template = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    # queued | sent | failed, delivery is handled elsewhere
    status = Column(String, nullable=False, default="queued")
    created_at = Column(Float, nullable=False)
