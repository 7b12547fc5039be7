from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


KIND_PERCENTAGE = "percentage"
KIND_FIXED_AMOUNT = "fixed_amount"
KIND_BUY_X_GET_Y = "buy_x_get_y"
KIND_BUNDLE = "bundle"
DISCOUNT_KINDS = (KIND_PERCENTAGE, KIND_FIXED_AMOUNT, KIND_BUY_X_GET_Y, KIND_BUNDLE)

CAMPAIGN_ACTIVE = "active"
CAMPAIGN_INACTIVE = "inactive"
CAMPAIGN_EXPIRED = "expired"
CAMPAIGN_STATUSES = (CAMPAIGN_ACTIVE, CAMPAIGN_INACTIVE, CAMPAIGN_EXPIRED)


class DiscountCampaign(db.Model):
    """
    Time-bounded promotional offer composed of one or more rules.

    Eligible only when status == "active" and now falls in [start_date, end_date].
    """
    __tablename__ = "discount_campaigns"
    __table_args__ = (
        db.Index("ix_discount_campaigns_status_window", "status", "start_date", "end_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    kind = db.Column(db.String(32), nullable=False)  # percentage, fixed_amount, buy_x_get_y, bundle
    status = db.Column(db.String(16), nullable=False, default=CAMPAIGN_ACTIVE, index=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)

    created_by = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    rules = db.relationship("DiscountRule", backref=db.backref("campaign", lazy=True), lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "status": self.status,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountRule(db.Model):
    """
    Per-product parameters of a campaign.

    discount_value meaning depends on the campaign kind:
    - percentage / bundle: whole percent (0-100)
    - fixed_amount: cents off each unit
    - buy_x_get_y: unused (buy_quantity / get_quantity apply)
    """
    __tablename__ = "discount_rules"
    __table_args__ = (
        db.Index("ix_discount_rules_product_campaign", "product_id", "campaign_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, db.ForeignKey("discount_campaigns.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    discount_value = db.Column(db.Integer, nullable=False, default=0)
    minimum_quantity = db.Column(db.Integer, nullable=False, default=1)
    maximum_quantity = db.Column(db.Integer, nullable=True)

    buy_quantity = db.Column(db.Integer, nullable=True)
    get_quantity = db.Column(db.Integer, nullable=True)

    maximum_usage_per_customer = db.Column(db.Integer, nullable=True)
    maximum_total_usage = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "product_id": self.product_id,
            "discount_value": self.discount_value,
            "minimum_quantity": self.minimum_quantity,
            "maximum_quantity": self.maximum_quantity,
            "buy_quantity": self.buy_quantity,
            "get_quantity": self.get_quantity,
            "maximum_usage_per_customer": self.maximum_usage_per_customer,
            "maximum_total_usage": self.maximum_total_usage,
            "created_at": to_utc_z(self.created_at),
        }


class LegacyDiscount(db.Model):
    """
    Single-table percentage discounts from the storefront's first schema.

    Only read when DISCOUNT_SCHEMA == "legacy". Legacy rows carry no usage
    ceilings and no quantity bounds.
    """
    __tablename__ = "discounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    percentage = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "percentage": self.percentage,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
        }


class DiscountUsage(db.Model):
    """
    Append-only record of one rule applied to one order.

    IMMUTABLE: rows are never updated or deleted by the checkout engine.
    Inserted only through ledger_store.record_discount_usage, which refuses
    rows that would push a campaign past its ceilings.
    """
    __tablename__ = "discount_usages"
    __table_args__ = (
        db.Index("ix_discount_usages_campaign_customer", "campaign_id", "customer_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, nullable=False, index=True)
    rule_id = db.Column(db.Integer, nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    discount_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "rule_id": self.rule_id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "discount_cents": self.discount_cents,
            "quantity": self.quantity,
            "created_at": to_utc_z(self.created_at),
        }
