from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class ProjectConfig(db.Model):
    """Single-row shop configuration (UPI collection account)."""
    __tablename__ = "project_configs"

    id = db.Column(db.Integer, primary_key=True)
    upi_id = db.Column(db.String(128), nullable=False)
    payee_name = db.Column(db.String(128), nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "upi_id": self.upi_id,
            "payee_name": self.payee_name,
            "updated_by_user_id": self.updated_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
        }
