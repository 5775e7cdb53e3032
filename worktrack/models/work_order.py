"""
WorkTrack — Work order items & specs.

Two parallel families share one shape, selected by *kind*:

    kind    catalog (master)            ticket detail              allocation
    ─────   ─────────────────────────   ────────────────────────   ──────────────────────────
    item    work_order_items_master     work_order_item_details    work_order_item_allocations
    spec    work_order_specs_master     work_order_spec_details    work_order_spec_allocations

A *detail* attaches a catalog entry to a ticket with a total ``quantity``.
An *allocation* earmarks part of that quantity for one workflow step.

``TicketDetail.allocated_quantity`` is the running total of the detail's
live allocations.  It is only ever changed by conditional UPDATEs in
``allocation_service`` so that ``0 <= allocated_quantity <= quantity``
holds under concurrent writers; the CHECK constraints are the backstop.

Quantities are fixed-point ``Numeric(14, 4)``; SQL arithmetic on them is
rounded back to ``QUANTITY_SCALE`` so SQLite (which computes in REAL)
agrees with PostgreSQL on whether an allocation fits.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy.orm import declared_attr

from worktrack.models import db


QUANTITY_SCALE = 4
QUANTITY_QUANTUM = Decimal(1).scaleb(-QUANTITY_SCALE)
MAX_QUANTITY = Decimal(10) ** 10

Quantity = db.Numeric(14, QUANTITY_SCALE)


def _utcnow():
    return datetime.now(timezone.utc)


def quantity_json(value):
    """Quantities go out as JSON numbers, not strings."""
    return float(value) if value is not None else None


def format_quantity(value) -> str:
    """Human form for messages: 0.2000 -> "0.2", 10.0000 -> "10"."""
    return f"{Decimal(str(value)).normalize():f}"


# ═════════════════════════════════════════════════════════════════════════════
# Shared column sets
# ═════════════════════════════════════════════════════════════════════════════


class CatalogEntryMixin:
    """Reusable catalog entry: code, description, default quantity and unit."""

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(500), nullable=False)
    category = db.Column(db.String(100), default="")
    default_quantity = db.Column(Quantity, nullable=False, default=1)
    unit = db.Column(db.String(30), nullable=False, default="nos")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @declared_attr
    def created_by(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "category": self.category,
            "default_quantity": quantity_json(self.default_quantity),
            "unit": self.unit,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class TicketDetailMixin:
    """Catalog entry attached to a ticket with a total quantity."""

    id = db.Column(db.Integer, primary_key=True)
    quantity = db.Column(Quantity, nullable=False)
    unit = db.Column(db.String(30), nullable=False)
    remarks = db.Column(db.Text, nullable=True)
    allocated_quantity = db.Column(
        Quantity, nullable=False, default=0, server_default="0",
        comment="Running total of live allocations; maintained by conditional UPDATE",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @declared_attr
    def ticket_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False, index=True,
        )

    @declared_attr
    def added_by(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @property
    def remaining_quantity(self) -> Decimal:
        return (self.quantity or 0) - (self.allocated_quantity or 0)

    def to_dict(self, include_entry=True):
        d = {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "catalog_entry_id": self.catalog_entry_id,
            "quantity": quantity_json(self.quantity),
            "unit": self.unit,
            "remarks": self.remarks,
            "added_by": self.added_by,
            "allocated_quantity": quantity_json(self.allocated_quantity or 0),
            "remaining_quantity": quantity_json(self.remaining_quantity),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_entry and self.catalog_entry is not None:
            d["catalog_entry"] = self.catalog_entry.to_dict()
        return d


class AllocationMixin:
    """Portion of a detail's quantity earmarked for one workflow step."""

    id = db.Column(db.Integer, primary_key=True)
    allocated_quantity = db.Column(Quantity, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @declared_attr
    def workflow_step_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
            nullable=False, index=True,
        )

    @declared_attr
    def allocated_by(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "detail_id": self.detail_id,
            "workflow_step_id": self.workflow_step_id,
            "allocated_quantity": quantity_json(self.allocated_quantity),
            "allocated_by": self.allocated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Items
# ═════════════════════════════════════════════════════════════════════════════


class ItemMaster(CatalogEntryMixin, db.Model):
    __tablename__ = "work_order_items_master"

    subcategory = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d["subcategory"] = self.subcategory
        return d

    def __repr__(self):
        return f"<ItemMaster {self.id}: {self.code}>"


class ItemDetail(TicketDetailMixin, db.Model):
    __tablename__ = "work_order_item_details"

    catalog_entry_id = db.Column(
        db.Integer, db.ForeignKey("work_order_items_master.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_item_detail_quantity"),
        db.CheckConstraint(
            "allocated_quantity >= 0 AND allocated_quantity <= quantity",
            name="ck_item_detail_allocated",
        ),
    )

    catalog_entry = db.relationship("ItemMaster", lazy="joined")

    def __repr__(self):
        return f"<ItemDetail {self.id}: ticket={self.ticket_id} {self.allocated_quantity}/{self.quantity}>"


class ItemAllocation(AllocationMixin, db.Model):
    __tablename__ = "work_order_item_allocations"

    detail_id = db.Column(
        db.Integer, db.ForeignKey("work_order_item_details.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    __table_args__ = (
        db.CheckConstraint("allocated_quantity > 0", name="ck_item_allocation_positive"),
    )

    detail = db.relationship("ItemDetail")

    def __repr__(self):
        return f"<ItemAllocation {self.id}: detail={self.detail_id} step={self.workflow_step_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Specs
# ═════════════════════════════════════════════════════════════════════════════


class SpecMaster(CatalogEntryMixin, db.Model):
    __tablename__ = "work_order_specs_master"

    work_chunk = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        d = super().to_dict()
        d["work_chunk"] = self.work_chunk
        return d

    def __repr__(self):
        return f"<SpecMaster {self.id}: {self.code}>"


class SpecDetail(TicketDetailMixin, db.Model):
    __tablename__ = "work_order_spec_details"

    catalog_entry_id = db.Column(
        db.Integer, db.ForeignKey("work_order_specs_master.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_spec_detail_quantity"),
        db.CheckConstraint(
            "allocated_quantity >= 0 AND allocated_quantity <= quantity",
            name="ck_spec_detail_allocated",
        ),
    )

    catalog_entry = db.relationship("SpecMaster", lazy="joined")

    def __repr__(self):
        return f"<SpecDetail {self.id}: ticket={self.ticket_id} {self.allocated_quantity}/{self.quantity}>"


class SpecAllocation(AllocationMixin, db.Model):
    __tablename__ = "work_order_spec_allocations"

    detail_id = db.Column(
        db.Integer, db.ForeignKey("work_order_spec_details.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    __table_args__ = (
        db.CheckConstraint("allocated_quantity > 0", name="ck_spec_allocation_positive"),
    )

    detail = db.relationship("SpecDetail")

    def __repr__(self):
        return f"<SpecAllocation {self.id}: detail={self.detail_id} step={self.workflow_step_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Kind registry
# ═════════════════════════════════════════════════════════════════════════════


class WorkOrderKind(NamedTuple):
    name: str
    label: str
    master: type
    detail: type
    allocation: type


WORK_ORDER_KINDS = {
    "item": WorkOrderKind("item", "Item", ItemMaster, ItemDetail, ItemAllocation),
    "spec": WorkOrderKind("spec", "Spec", SpecMaster, SpecDetail, SpecAllocation),
}
