"""
Auth Models — staff and client-portal users.

Authentication itself is handled outside this service; these rows exist so
that cycles, tasks and audit entries can reference an actor.
"""

from datetime import datetime, timezone

from app.models import db

USER_ROLES = {"admin", "staff", "client"}


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    display_name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, default="staff")  # admin, staff, client
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_users_role", "role"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "display_name": self.display_name,
            "role": self.role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def to_ref(self):
        """Compact {id, name} reference used inside other payloads."""
        return {"id": self.id, "name": self.display_name or self.full_name}

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"
