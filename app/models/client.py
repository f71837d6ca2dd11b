"""
Client model — the practice's customers.

Only the columns the operations domain reads are declared here.
"""

from datetime import datetime, timezone

from app.models import db


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(200), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    operation_assignments = db.relationship(
        "ClientOperationAssignment", back_populates="client",
        lazy="dynamic", cascade="all, delete-orphan",
    )
    operation_cycles = db.relationship(
        "OperationCycle", back_populates="client",
        lazy="dynamic", cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self):
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "email": self.email,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Client {self.id}: {self.full_name}>"
