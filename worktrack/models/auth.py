"""
Auth Models — users and their single business role.

Roles drive the permission checks in the service layer:
    eo            — executive officer; may delete any document, change ticket status,
                    update any workflow step, override allocations
    dept_officer  — may delete progress documents in their department's steps
    finance       — may be assigned finance approval requests
    employee / do / vendor — ordinary actors
"""

from datetime import datetime, timezone

from worktrack.models import db

USER_ROLES = frozenset({"employee", "do", "eo", "dept_officer", "vendor", "finance"})

# Roles allowed to delete documents they did not upload
DOCUMENT_ADMIN_ROLES = frozenset({"eo"})
PROGRESS_DOCUMENT_ADMIN_ROLES = frozenset({"eo", "dept_officer"})


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    role = db.Column(
        db.String(20), nullable=False, default="employee",
        comment="employee | do | eo | dept_officer | vendor | finance",
    )
    department = db.Column(db.String(100))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "role IN ('employee','do','eo','dept_officer','vendor','finance')",
            name="ck_user_role",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.username} ({self.role})>"
