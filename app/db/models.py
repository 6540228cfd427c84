"""
SQLAlchemy ORM models for QuoteDesk.
Parties, catalog prices and the negotiation ledger (requests, bids, counter-offers).
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Numeric,
    ForeignKey, Enum, JSON, CheckConstraint, Index, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from app.core.rbac import PartyType
from app.db.session import Base


# ============= ENUMS =============
# Stored as VARCHAR + CHECK so the same schema runs on PostgreSQL and SQLite.

class QuoteStatus(str, enum.Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    DELETED = "deleted"


class PriceType(str, enum.Enum):
    DEFAULT = "default"
    PRIVATE = "private"


def enum_values(enum_cls):
    return [e.value for e in enum_cls]


PartyTypeType = Enum(
    *enum_values(PartyType),
    name='partytype',
    native_enum=False,
    create_constraint=True,
    length=30,
)
QuoteStatusType = Enum(
    *enum_values(QuoteStatus),
    name='quotestatus',
    native_enum=False,
    create_constraint=True,
    length=20,
)
PriceTypeType = Enum(
    *enum_values(PriceType),
    name='pricetype',
    native_enum=False,
    create_constraint=True,
    length=20,
)


# ============= PARTIES =============

class Party(Base):
    """A trading party: a buying company or a selling supplier / service provider."""
    __tablename__ = "parties"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    party_type = Column(PartyTypeType, nullable=False, index=True)
    email = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    users = relationship("User", back_populates="party")
    products = relationship("Product", back_populates="supplier")


class User(Base):
    """An individual acting on behalf of a party."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    party = relationship("Party", back_populates="users")


# ============= CATALOG PRICING =============

class Product(Base):
    """Catalog product (or service) offered by a seller."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    supplier_id = Column(Integer, ForeignKey("parties.id"), nullable=False, index=True)
    sku = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(255))
    unit = Column(String(50), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    supplier = relationship("Party", back_populates="products")
    default_prices = relationship("DefaultPrice", back_populates="product")
    private_prices = relationship("PrivatePrice", back_populates="product")


class DefaultPrice(Base):
    """Public list price. Only one active row per product."""
    __tablename__ = "default_prices"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    effective_from = Column(DateTime(timezone=True), server_default=func.now())
    effective_until = Column(DateTime(timezone=True))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    product = relationship("Product", back_populates="default_prices")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_default_price_amount_non_negative"),
        Index(
            'uq_default_prices_active_product', 'product_id',
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class PrivatePrice(Base):
    """
    Party-specific override of a product's default price.

    Exactly one of ``fixed_price`` (with ``currency``) or
    ``discount_percentage`` is set; the check constraint backs the
    validation done in the catalog pricing service.
    """
    __tablename__ = "private_prices"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=False, index=True)
    fixed_price = Column(Numeric(12, 2))
    discount_percentage = Column(Numeric(5, 2))
    currency = Column(String(3), nullable=False, default="USD")
    effective_from = Column(DateTime(timezone=True), server_default=func.now())
    effective_until = Column(DateTime(timezone=True))
    notes = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    product = relationship("Product", back_populates="private_prices")
    party = relationship("Party")

    __table_args__ = (
        CheckConstraint(
            "(fixed_price IS NULL) <> (discount_percentage IS NULL)",
            name="ck_private_price_one_override",
        ),
        CheckConstraint(
            "discount_percentage IS NULL OR (discount_percentage >= 0 AND discount_percentage <= 100)",
            name="ck_private_price_discount_range",
        ),
        CheckConstraint(
            "fixed_price IS NULL OR fixed_price >= 0",
            name="ck_private_price_fixed_non_negative",
        ),
        Index(
            'uq_private_prices_active_pair', 'product_id', 'party_id',
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class PriceAuditLog(Base):
    """History of default and private price changes."""
    __tablename__ = "price_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    price_type = Column(PriceTypeType, nullable=False)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=True)
    old_amount = Column(Numeric(12, 2))
    new_amount = Column(Numeric(12, 2))
    old_discount = Column(Numeric(5, 2))
    new_discount = Column(Numeric(5, 2))
    currency = Column(String(3))
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    change_reason = Column(Text)
    changed_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


# ============= NEGOTIATION LEDGER =============

class QuoteRequest(Base):
    """
    Request for Quote: one negotiation thread.

    ``status`` is a cached projection; read it through
    ``state_machine.effective_status`` so an elapsed ``expires_at`` wins.
    ``version`` is bumped on every UPDATE and rejects stale writers.
    """
    __tablename__ = "quote_requests"

    id = Column(Integer, primary_key=True, index=True)
    requesting_party_id = Column(Integer, ForeignKey("parties.id"), nullable=False, index=True)
    target_party_id = Column(Integer, ForeignKey("parties.id"), nullable=True, index=True)
    responding_party_id = Column(Integer, ForeignKey("parties.id"), nullable=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)

    # Free-form subject for general RFQs
    title = Column(String(255))
    description = Column(Text)
    category = Column(String(255))

    quantity = Column(Numeric(12, 3))
    unit = Column(String(50))
    target_price = Column(Numeric(12, 2))
    currency = Column(String(3), nullable=False, default="USD")
    message = Column(Text)

    status = Column(QuoteStatusType, nullable=False, default=QuoteStatus.PENDING.value, index=True)
    expires_at = Column(DateTime(timezone=True), index=True)
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    responded_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    requesting_party = relationship("Party", foreign_keys=[requesting_party_id])
    target_party = relationship("Party", foreign_keys=[target_party_id])
    responding_party = relationship("Party", foreign_keys=[responding_party_id])
    product = relationship("Product")
    requested_by_user = relationship("User", foreign_keys=[requested_by_user_id])
    responses = relationship(
        "QuoteResponse",
        back_populates="quote_request",
        order_by="QuoteResponse.id",
    )
    counter_offers = relationship(
        "CounterOffer",
        back_populates="quote_request",
        order_by="CounterOffer.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("quantity IS NULL OR quantity > 0", name="ck_quote_request_quantity_positive"),
        CheckConstraint("target_price IS NULL OR target_price >= 0", name="ck_quote_request_target_price"),
    )


class QuoteResponse(Base):
    """A seller's priced bid against a quote request."""
    __tablename__ = "quote_responses"

    id = Column(Integer, primary_key=True, index=True)
    quote_request_id = Column(Integer, ForeignKey("quote_requests.id"), nullable=False, index=True)
    responding_party_id = Column(Integer, ForeignKey("parties.id"), nullable=False, index=True)
    responded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    quantity = Column(Numeric(12, 3))
    unit = Column(String(50))
    valid_until = Column(DateTime(timezone=True))
    message = Column(Text)
    terms = Column(Text)

    is_accepted = Column(Boolean, default=False, nullable=False)
    accepted_at = Column(DateTime(timezone=True))
    rejected_at = Column(DateTime(timezone=True))
    rejection_comment = Column(Text)
    responded_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    quote_request = relationship("QuoteRequest", back_populates="responses")
    responding_party = relationship("Party")
    responded_by_user = relationship("User")
    counter_offers = relationship("CounterOffer", back_populates="quote_response")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_quote_response_price_non_negative"),
        CheckConstraint("quantity IS NULL OR quantity > 0", name="ck_quote_response_quantity_positive"),
        # Storage backstop for the single-winner rule
        Index(
            'uq_quote_responses_single_accepted', 'quote_request_id',
            unique=True,
            postgresql_where=text("is_accepted"),
            sqlite_where=text("is_accepted = 1"),
        ),
    )


class CounterOffer(Base):
    """Buyer's price amendment on a request as a whole or on one bid."""
    __tablename__ = "counter_offers"

    id = Column(Integer, primary_key=True, index=True)
    quote_request_id = Column(Integer, ForeignKey("quote_requests.id"), nullable=False, index=True)
    quote_response_id = Column(Integer, ForeignKey("quote_responses.id"), nullable=True, index=True)
    counter_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    counter_message = Column(Text)
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    quote_request = relationship("QuoteRequest", back_populates="counter_offers")
    quote_response = relationship("QuoteResponse", back_populates="counter_offers")

    __table_args__ = (
        CheckConstraint("counter_price >= 0", name="ck_counter_offer_price_non_negative"),
    )


# ============= AUDIT LOG =============

class AuditLog(Base):
    """Append-only record of every negotiation transition."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    party_id = Column(Integer, ForeignKey("parties.id"), nullable=True)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    details = Column(JSON)

    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )
