"""
WorkTrack — Ticket domain models.

Models:
    - Ticket:                  the work order itself
    - WorkflowStep:            node of a ticket's 3-level step tree
    - WorkflowStepDependency:  "step X waits for step Y" edge
    - WorkflowComment:         free-text note on a step
    - TicketNote:              a user's private note on a ticket

Step tree addressing:
    Every step carries (level_1, level_2, level_3).  A level-1 step has
    level_2 == 0 and level_3 == 0; a level-2 step has level_3 == 0.
    ``step_number`` is the dotted form ("2.1.0") used for display and ordering.
"""

from datetime import datetime, timezone

from worktrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

TICKET_STATUSES = frozenset({
    "draft", "created", "approved", "active",
    "sent_to_finance", "approved_by_finance", "rejected_by_finance",
    "completed", "closed", "cancelled",
})

TICKET_PRIORITIES = frozenset({"LOW", "MEDIUM", "HIGH", "CRITICAL"})

STEP_STATUSES = frozenset({"not_started", "wip", "completed", "closed"})
STEP_DONE_STATUSES = frozenset({"completed", "closed"})

DEPENDENCY_MODES = frozenset({"all", "any_one"})

MAX_STEP_DEPTH = 3


def _utcnow():
    return datetime.now(timezone.utc)


def format_step_number(level_1: int, level_2: int = 0, level_3: int = 0) -> str:
    return f"{level_1}.{level_2}.{level_3}"


def step_depth(level_2: int, level_3: int) -> int:
    """Return 1, 2 or 3 for a step's position in the tree."""
    if level_2 == 0:
        return 1
    if level_3 == 0:
        return 2
    return 3


def validate_no_cycle(session, step_id, new_depends_on_id):
    """
    Check that making step_id wait for new_depends_on_id does not create a cycle.

    Uses iterative DFS from new_depends_on_id, walking the steps it already
    waits for.  Returns True if safe, False if a cycle (or self-edge) is found.
    """
    if step_id == new_depends_on_id:
        return False

    visited = set()
    stack = [new_depends_on_id]

    while stack:
        current = stack.pop()
        if current == step_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        deps = (
            session.query(WorkflowStepDependency.depends_on_step_id)
            .filter(
                WorkflowStepDependency.step_id == current,
                WorkflowStepDependency.is_active.is_(True),
            )
            .all()
        )
        for (dep_id,) in deps:
            stack.append(dep_id)

    return True


# ═════════════════════════════════════════════════════════════════════════════
# 1. Ticket
# ═════════════════════════════════════════════════════════════════════════════


class Ticket(db.Model):
    """
    A work order raised against a property.

    ticket_number format: TKT-000001 (auto-generated in service layer).
    Finance fields mirror the latest FinanceApproval so status checks do
    not need a join.
    """

    __tablename__ = "tickets"

    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(30), unique=True, nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default="created",
        comment="draft | created | approved | active | sent_to_finance | approved_by_finance "
                "| rejected_by_finance | completed | closed | cancelled",
    )
    priority = db.Column(db.String(10), nullable=False, default="MEDIUM")
    category = db.Column(db.String(100), default="")
    department = db.Column(db.String(100), default="")
    property_id = db.Column(db.String(50), default="")
    property_location = db.Column(db.String(255), default="")

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    copied_from_ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="SET NULL"), nullable=True,
    )

    # Completion gates
    requires_finance_approval = db.Column(db.Boolean, nullable=False, default=False)
    completion_documents_required = db.Column(db.Boolean, nullable=False, default=False)

    # Finance mirror
    finance_officer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    finance_submission_count = db.Column(db.Integer, nullable=False, default=0)
    latest_finance_status = db.Column(
        db.String(20), nullable=True, comment="pending | approved | rejected",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','created','approved','active','sent_to_finance',"
            "'approved_by_finance','rejected_by_finance','completed','closed','cancelled')",
            name="ck_ticket_status",
        ),
        db.CheckConstraint(
            "priority IN ('LOW','MEDIUM','HIGH','CRITICAL')",
            name="ck_ticket_priority",
        ),
        db.Index("idx_ticket_status", "status"),
        db.Index("idx_ticket_assigned", "assigned_to"),
    )

    steps = db.relationship(
        "WorkflowStep", backref="ticket", lazy="dynamic",
        cascade="all, delete-orphan",
        order_by=lambda: (WorkflowStep.level_1, WorkflowStep.level_2, WorkflowStep.level_3),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "category": self.category,
            "department": self.department,
            "property_id": self.property_id,
            "property_location": self.property_location,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "copied_from_ticket_id": self.copied_from_ticket_id,
            "requires_finance_approval": self.requires_finance_approval,
            "completion_documents_required": self.completion_documents_required,
            "finance_officer_id": self.finance_officer_id,
            "finance_submission_count": self.finance_submission_count,
            "latest_finance_status": self.latest_finance_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Ticket {self.id}: {self.ticket_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStep(db.Model):
    """One node of a ticket's workflow tree (max depth 3)."""

    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_number = db.Column(db.String(20), nullable=False, comment="Dotted position: 1.2.0")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="not_started",
        comment="not_started | wip | completed | closed",
    )

    level_1 = db.Column(db.Integer, nullable=False)
    level_2 = db.Column(db.Integer, nullable=False, default=0)
    level_3 = db.Column(db.Integer, nullable=False, default=0)
    parent_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="SET NULL"),
        nullable=True, comment="Informational; tree shape comes from level fields",
    )

    is_parallel = db.Column(db.Boolean, nullable=False, default=True)
    dependency_mode = db.Column(db.String(10), nullable=False, default="all", comment="all | any_one")
    is_dependency_locked = db.Column(db.Boolean, nullable=False, default=False)

    progress = db.Column(db.Integer, nullable=False, default=0)
    mandatory_documents = db.Column(db.JSON, default=list)
    optional_documents = db.Column(db.JSON, default=list)

    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('not_started','wip','completed','closed')",
            name="ck_workflow_step_status",
        ),
        db.CheckConstraint("dependency_mode IN ('all','any_one')", name="ck_workflow_step_dep_mode"),
        db.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_workflow_step_progress"),
        db.UniqueConstraint("ticket_id", "level_1", "level_2", "level_3", name="uq_workflow_step_position"),
    )

    dependencies = db.relationship(
        "WorkflowStepDependency",
        foreign_keys="WorkflowStepDependency.step_id",
        backref="step", lazy="dynamic", cascade="all, delete-orphan",
    )
    comments = db.relationship(
        "WorkflowComment", backref="step", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowComment.created_at",
    )

    @property
    def depth(self) -> int:
        return step_depth(self.level_2, self.level_3)

    def dependency_ids(self) -> list[int]:
        return [d.depends_on_step_id for d in self.dependencies.filter_by(is_active=True)]

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "step_number": self.step_number,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "level_1": self.level_1,
            "level_2": self.level_2,
            "level_3": self.level_3,
            "depth": self.depth,
            "parent_step_id": self.parent_step_id,
            "is_parallel": self.is_parallel,
            "dependency_mode": self.dependency_mode,
            "is_dependency_locked": self.is_dependency_locked,
            "dependent_on_step_ids": self.dependency_ids(),
            "progress": self.progress,
            "mandatory_documents": self.mandatory_documents or [],
            "optional_documents": self.optional_documents or [],
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.id}: {self.step_number} {self.title!r}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. WorkflowStepDependency
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStepDependency(db.Model):
    """Edge ``step_id`` → waits for → ``depends_on_step_id`` (same ticket)."""

    __tablename__ = "workflow_step_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    depends_on_step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("step_id", "depends_on_step_id", name="uq_step_dependency"),
        db.CheckConstraint("step_id != depends_on_step_id", name="ck_step_dependency_not_self"),
    )

    depends_on = db.relationship("WorkflowStep", foreign_keys=[depends_on_step_id])

    def to_dict(self):
        return {
            "id": self.id,
            "step_id": self.step_id,
            "depends_on_step_id": self.depends_on_step_id,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<WorkflowStepDependency {self.step_id} → {self.depends_on_step_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. WorkflowComment
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowComment(db.Model):
    __tablename__ = "workflow_comments"

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    content = db.Column(db.Text, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "step_id": self.step_id,
            "content": self.content,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 5. TicketNote
# ═════════════════════════════════════════════════════════════════════════════


class TicketNote(db.Model):
    """A user's private note on a ticket; one per (ticket, user)."""

    __tablename__ = "ticket_user_notes"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(
        db.Integer, db.ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    note_content = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("ticket_id", "user_id", name="uq_ticket_user_note"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "user_id": self.user_id,
            "note_content": self.note_content,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
