from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class NotificationSnapshot(db.Model):
    """
    Bounded key-value persistence for a notification list.

    One row per owner key holding the whole (already capped) list as JSON.
    Not a queryable store: it is read once at startup and overwritten on
    every change.
    """
    __tablename__ = "notification_snapshots"
    __table_args__ = (
        db.UniqueConstraint("owner_key", name="uq_notification_snapshots_owner"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_key = db.Column(db.String(64), nullable=False)
    items = db.Column(db.JSON, nullable=False, default=list)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_key": self.owner_key,
            "items": self.items,
            "updated_at": to_utc_z(self.updated_at),
        }
