import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from poflow.database import Base

PO_STATUSES = (
    "DRAFT",
    "PENDING_APPROVAL",
    "APPROVED",
    "SENT",
    "RECEIVED",
    "INVOICED",
    "CANCELLED",
)
TAX_MODES = ("NONE", "EXCLUSIVE", "INCLUSIVE")


def in_list(column: str, values: tuple) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    po_number: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(30), default="DRAFT", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")

    tax_mode: Mapped[str] = mapped_column(String(20), default="EXCLUSIVE")
    # Snapshot of the rate at creation; catalog edits never rewrite it
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    tax_rate_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tax_rates.id", ondelete="SET NULL")
    )
    subtotal_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )

    supplier_name: Mapped[str] = mapped_column(String(200), nullable=False)
    supplier_email: Mapped[Optional[str]] = mapped_column(String(255))
    supplier_phone: Mapped[Optional[str]] = mapped_column(String(50))
    supplier_address: Mapped[Optional[str]] = mapped_column(String(500))

    order_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )

    invoice_upload_token: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True
    )
    invoice_upload_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    invoice_url: Mapped[Optional[str]] = mapped_column(Text)
    invoice_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "po_number", name="uq_po_org_number"),
        CheckConstraint(in_list("status", PO_STATUSES), name="chk_po_status"),
        CheckConstraint(in_list("tax_mode", TAX_MODES), name="chk_po_tax_mode"),
        Index("idx_po_organization", "organization_id"),
        Index("idx_po_status", "organization_id", "status"),
    )


class LineItem(Base):
    __tablename__ = "po_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    purchase_order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "line_number", name="uq_po_line_item"),
        CheckConstraint("quantity > 0", name="chk_po_line_qty"),
        Index("idx_po_items_po", "purchase_order_id"),
    )
