"""
Tax Practice Operations
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of create/update/delete events.
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {"created", "updated", "deleted"}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action on a polymorphic ``auditable`` record.
    ``changes_json`` carries an old→new snapshot for updates; ``message``
    is a human-readable note such as the generation summary of a cycle.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_auditable", "auditable_type", "auditable_id"),
        db.Index("idx_audit_user", "user_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    auditable_type = db.Column(
        db.String(60), nullable=False,
        comment="Model class name: OperationCycle | OperationTask | …",
    )
    auditable_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced record (int-as-string)",
    )

    action = db.Column(db.String(20), nullable=False, comment="created | updated | deleted")
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Acting user; NULL for system-generated entries",
    )

    changes_json = db.Column(db.Text, default="{}", comment="JSON: {field: [old, new]}")
    message = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    user = db.relationship("User")

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def changes(self) -> dict:
        """Deserialise *changes_json* to a Python dict."""
        try:
            return json.loads(self.changes_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def description(self) -> str:
        words = []
        for i, ch in enumerate(self.auditable_type or ""):
            if ch.isupper() and i:
                words.append(" ")
            words.append(ch.lower())
        entity = f"{''.join(words)} #{self.auditable_id}"
        return f"{(self.action or '').capitalize()} {entity}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "auditable_type": self.auditable_type,
            "auditable_id": self.auditable_id,
            "action": self.action,
            "user_id": self.user_id,
            "changes": self.changes,
            "message": self.message,
            "description": self.description(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.auditable_type}/{self.auditable_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    auditable,
    action: str,
    user=None,
    changes: dict | None = None,
    message: str | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``user`` may be a User instance, a user id, or None for system runs.
    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    user_id = getattr(user, "id", user)

    log = AuditLog(
        auditable_type=type(auditable).__name__,
        auditable_id=str(auditable.id),
        action=action,
        user_id=user_id,
        changes_json=json.dumps(changes or {}, default=str),
        message=message,
    )
    db.session.add(log)
    db.session.flush()
    return log
