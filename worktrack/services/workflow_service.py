"""
Workflow Step Tree — Service Layer.

Business logic for:
    - Position assignment:   level_1 / level_2 / level_3, max depth 3
    - Single & bulk creation (bulk isolates each row in a SAVEPOINT)
    - Updates with permission checks (EO or assignee)
    - Dependencies:          cycle detection, locking, completion gating
    - Mandatory documents:   completion refused while any is missing
    - Deletion:              subtree removal, allocations released
    - Comments
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from worktrack.core.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.audit import write_audit
from worktrack.models.auth import User
from worktrack.models.document import Document
from worktrack.models.ticket import (
    DEPENDENCY_MODES,
    MAX_STEP_DEPTH,
    STEP_DONE_STATUSES,
    STEP_STATUSES,
    Ticket,
    WorkflowComment,
    WorkflowStep,
    WorkflowStepDependency,
    format_step_number,
    validate_no_cycle,
)
from worktrack.services import file_reference_service
from worktrack.services.allocation_service import release_step_allocations
from worktrack.storage import get_blob_store
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise, parse_date

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "title", "description", "status", "assigned_to", "due_date",
    "is_parallel", "dependency_mode", "progress",
    "mandatory_documents", "optional_documents",
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def get_step(step_id: int, ticket_id: int | None = None) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if step is None or (ticket_id is not None and step.ticket_id != ticket_id):
        raise NotFoundError("WorkflowStep", step_id)
    return step


def _next_position(ticket_id: int, parent: WorkflowStep | None) -> tuple[int, int, int]:
    """Return the (level_1, level_2, level_3) slot for a new step under ``parent``."""
    S = WorkflowStep
    if parent is None:
        top = db.session.execute(
            select(func.max(S.level_1)).where(S.ticket_id == ticket_id)
        ).scalar()
        return (top or 0) + 1, 0, 0

    if parent.depth >= MAX_STEP_DEPTH:
        raise ValidationError(
            "Maximum hierarchy depth (3 levels) reached. "
            "Cannot add sub-steps to a level 3 step.",
            details={"parent_step_id": "level 3 step"},
        )
    if parent.depth == 1:
        top = db.session.execute(
            select(func.max(S.level_2)).where(S.ticket_id == ticket_id, S.level_1 == parent.level_1)
        ).scalar()
        return parent.level_1, (top or 0) + 1, 0

    top = db.session.execute(
        select(func.max(S.level_3)).where(
            S.ticket_id == ticket_id,
            S.level_1 == parent.level_1,
            S.level_2 == parent.level_2,
        )
    ).scalar()
    return parent.level_1, parent.level_2, (top or 0) + 1


def _validate_progress(value) -> int:
    try:
        progress = int(value)
    except (TypeError, ValueError):
        raise ValidationError("progress must be an integer", details={"progress": "invalid"}) from None
    if progress < 0 or progress > 100:
        raise ValidationError("progress must be between 0 and 100", details={"progress": "0..100"})
    return progress


def _validate_title(value) -> str:
    if value is not None and not isinstance(value, str):
        raise ValidationError("Title must be a string", details={"title": "string"})
    title = (value or "").strip()
    if not title:
        raise ValidationError("Title is required", details={"title": "required"})
    return title


def _validate_choice(field: str, value, choices) -> str:
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(f"Invalid {field}: {value!r}", details={field: sorted(choices)})
    return value


def _validate_document_names(field: str, value) -> list[str]:
    """A list of non-empty document names, stripped and de-duplicated in order."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list of names", details={field: "list"})
    names: list[str] = []
    for name in value:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{field} entries must be non-empty strings", details={field: name})
        if name.strip() not in names:
            names.append(name.strip())
    return names


def _insert_step(ticket_id: int, data: dict, actor_id, parent: WorkflowStep | None) -> WorkflowStep:
    """Validate and flush one step (no commit)."""
    title = _validate_title(data.get("title"))
    status = _validate_choice("status", data.get("status") or "not_started", STEP_STATUSES)
    mode = _validate_choice("dependency_mode", data.get("dependency_mode") or "all", DEPENDENCY_MODES)
    mandatory = _validate_document_names("mandatory_documents", data.get("mandatory_documents"))
    optional = _validate_document_names("optional_documents", data.get("optional_documents"))
    depends_on = data.get("dependent_on_step_ids") or []
    if not isinstance(depends_on, list):
        raise ValidationError("dependent_on_step_ids must be a list",
                              details={"dependent_on_step_ids": "list"})

    level_1, level_2, level_3 = _next_position(ticket_id, parent)
    step = WorkflowStep(
        ticket_id=ticket_id,
        step_number=format_step_number(level_1, level_2, level_3),
        title=title,
        description=data.get("description", ""),
        status=status,
        level_1=level_1,
        level_2=level_2,
        level_3=level_3,
        parent_step_id=parent.id if parent else None,
        is_parallel=bool(data.get("is_parallel", True)),
        dependency_mode=mode,
        progress=_validate_progress(data.get("progress", 0)),
        mandatory_documents=mandatory,
        optional_documents=optional,
        assigned_to=data.get("assigned_to"),
        created_by=actor_id,
        due_date=parse_date(data.get("due_date")),
    )
    if status == "wip":
        step.start_date = datetime.now(timezone.utc)
    db.session.add(step)
    db.session.flush()
    file_reference_service.sync_step_document_lists(step, actor_id)

    if depends_on:
        create_dependencies(step, depends_on, actor_id)
    return step


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def add_step(ticket_id: int, data: dict, actor_id: int | None = None) -> dict:
    """Add one step at the next free position (root, or under ``parent_step_id``)."""
    get_or_raise(Ticket, ticket_id, "Ticket")
    parent = None
    if data.get("parent_step_id"):
        parent = get_step(data["parent_step_id"], ticket_id)

    step = _insert_step(ticket_id, data, actor_id, parent)
    write_audit(
        action="WORKFLOW_ADDED",
        ticket_id=ticket_id,
        step_id=step.id,
        category="workflow_action",
        description=f"Added workflow step {step.step_number}: {step.title}",
        performed_by=actor_id,
        new_data={"step_number": step.step_number, "title": step.title},
    )
    commit_or_unavailable()
    logger.info("Added workflow step id=%s ticket=%s number=%s", step.id, ticket_id, step.step_number)
    return step.to_dict()


def add_steps_bulk(
    ticket_id: int,
    rows: list[dict],
    actor_id: int | None = None,
    parent_step_id: int | None = None,
) -> dict:
    """Create many steps; each row succeeds or fails on its own.

    Returns:
        {success_count, failed_count, total_count,
         errors: [{index, title, error}], created_step_ids}
    """
    get_or_raise(Ticket, ticket_id, "Ticket")
    parent = get_step(parent_step_id, ticket_id) if parent_step_id else None

    created_ids: list[int] = []
    errors: list[dict] = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            errors.append({"index": index, "title": "", "error": "Row must be an object"})
            continue
        title = row.get("title")
        title = title.strip() if isinstance(title, str) else ""
        if not title:
            errors.append({"index": index, "title": title, "error": "Title is required"})
            continue
        try:
            with db.session.begin_nested():
                step = _insert_step(ticket_id, row, actor_id, parent)
                created_ids.append(step.id)
        except (ValidationError, NotFoundError, IntegrityError) as exc:
            logger.info("Bulk step row %s rejected ticket=%s: %s", index, ticket_id, exc)
            errors.append({"index": index, "title": title, "error": str(exc)})

    if created_ids:
        write_audit(
            action="BULK_WORKFLOW_ADDED",
            ticket_id=ticket_id,
            category="workflow_action",
            description=f"Bulk added {len(created_ids)} workflow step(s)",
            performed_by=actor_id,
            new_data={"created_step_ids": created_ids, "failed_count": len(errors)},
        )
    commit_or_unavailable()
    logger.info(
        "Bulk step import ticket=%s: %d created, %d failed",
        ticket_id, len(created_ids), len(errors),
    )
    return {
        "success_count": len(created_ids),
        "failed_count": len(errors),
        "total_count": len(rows),
        "errors": errors,
        "created_step_ids": created_ids,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Dependencies
# ═════════════════════════════════════════════════════════════════════════════


def create_dependencies(step: WorkflowStep, depends_on_ids, actor_id=None) -> list[WorkflowStepDependency]:
    """Add "waits for" edges from ``step`` and lock them (no commit)."""
    existing = set(step.dependency_ids())
    created = []
    for raw_id in depends_on_ids:
        try:
            dep_id = int(raw_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid step id: {raw_id!r}",
                                  details={"dependent_on_step_ids": "integers"}) from None
        if dep_id == step.id:
            raise ValidationError("A step cannot depend on itself",
                                  details={"dependent_on_step_ids": dep_id})
        if dep_id in existing:
            continue
        target = db.session.get(WorkflowStep, dep_id)
        if target is None or target.ticket_id != step.ticket_id:
            raise ValidationError(
                f"Step {dep_id} does not exist on this ticket",
                details={"dependent_on_step_ids": dep_id},
            )
        if not validate_no_cycle(db.session, step.id, dep_id):
            raise ValidationError(
                f"Adding dependency on step {target.step_number} would create a circular dependency",
                details={"dependent_on_step_ids": dep_id},
            )
        dep = WorkflowStepDependency(step_id=step.id, depends_on_step_id=dep_id, created_by=actor_id)
        db.session.add(dep)
        db.session.flush()
        existing.add(dep_id)
        created.append(dep)
    if existing:
        step.is_dependency_locked = True
    return created


def set_dependencies(ticket_id: int, step_id: int, depends_on_ids, actor_id=None) -> dict:
    """Replace a step's dependencies; refused once they are locked (unless EO)."""
    step = get_step(step_id, ticket_id)
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if step.is_dependency_locked and not (actor and actor.role == "eo"):
        raise PermissionDeniedError("Dependencies are locked; only an EO can change them")

    db.session.execute(
        delete(WorkflowStepDependency).where(WorkflowStepDependency.step_id == step_id)
    )
    step.is_dependency_locked = False
    create_dependencies(step, depends_on_ids or [], actor_id)
    write_audit(
        action="DEPENDENCIES_UPDATED",
        ticket_id=ticket_id,
        step_id=step_id,
        category="workflow_action",
        description=f"Dependencies of step {step.step_number} set",
        performed_by=actor_id,
        new_data={"dependent_on_step_ids": step.dependency_ids()},
    )
    commit_or_unavailable()
    return step.to_dict()


def validate_step_completion(step: WorkflowStep) -> dict:
    """Can ``step`` move to completed?

    Every mandatory document must be uploaded.  Beyond that, parallel steps
    always can; serial steps need every dependency done (mode ``all``) or
    at least one (mode ``any_one``).
    """
    missing = file_reference_service.get_incomplete_references(step.id)
    result = {
        "can_complete": True,
        "incomplete_dependencies": [],
        "missing_documents": [ref["reference_name"] for ref in missing],
        "dependency_mode": step.dependency_mode,
        "message": "",
    }
    if missing:
        result["can_complete"] = False
        result["message"] = (
            "Mandatory documents must be uploaded first: "
            + ", ".join(result["missing_documents"])
        )
        return result

    deps = [d.depends_on for d in step.dependencies.filter_by(is_active=True)]
    if step.is_parallel or not deps:
        return result

    incomplete = [d for d in deps if d.status not in STEP_DONE_STATUSES]
    result["incomplete_dependencies"] = [
        {"id": d.id, "step_number": d.step_number, "title": d.title, "status": d.status}
        for d in incomplete
    ]
    if step.dependency_mode == "any_one":
        if len(incomplete) == len(deps):
            result["can_complete"] = False
            result["message"] = "At least one dependency must be completed first"
    elif incomplete:
        result["can_complete"] = False
        result["message"] = (
            "All dependencies must be completed first: "
            + ", ".join(d.step_number for d in incomplete)
        )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Update / delete / read
# ═════════════════════════════════════════════════════════════════════════════


def _audit_category(changes: dict) -> str:
    if "status" in changes:
        return "status_change"
    if "assigned_to" in changes:
        return "assignment_change"
    if "progress" in changes:
        return "progress_update"
    return "workflow_action"


def update_step(ticket_id: int, step_id: int, updates: dict, actor_id: int, remarks: str | None = None) -> dict:
    """Apply field updates to a step.

    Only an EO or the step's assignee may update it.  Moving to
    ``completed`` requires dependency satisfaction and sets progress to 100.
    """
    step = get_step(step_id, ticket_id)
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or (actor.role != "eo" and step.assigned_to != actor.id):
        raise PermissionDeniedError(
            "Permission denied: You can only update workflow steps that are assigned to you"
        )

    changes: dict = {}
    for field in _UPDATABLE_FIELDS:
        if field not in updates:
            continue
        value = updates[field]
        if field == "title":
            value = _validate_title(value)
        elif field == "status":
            value = _validate_choice("status", value, STEP_STATUSES)
        elif field == "dependency_mode":
            value = _validate_choice("dependency_mode", value, DEPENDENCY_MODES)
        elif field in ("mandatory_documents", "optional_documents"):
            value = _validate_document_names(field, value)
        elif field == "progress":
            value = _validate_progress(value)
        elif field == "due_date":
            value = parse_date(value)
        old = getattr(step, field)
        if old != value:
            changes[field] = (old, value)
            setattr(step, field, value)

    if "mandatory_documents" in changes or "optional_documents" in changes:
        file_reference_service.sync_step_document_lists(step, actor_id)

    new_status = changes.get("status", (None, None))[1]
    now = datetime.now(timezone.utc)
    if new_status == "completed":
        check = validate_step_completion(step)
        if not check["can_complete"]:
            db.session.rollback()
            raise ValidationError(check["message"], details={
                "incomplete_dependencies": check["incomplete_dependencies"],
                "missing_documents": check["missing_documents"],
            })
        step.completed_at = now
        step.progress = 100
    elif new_status == "wip" and step.start_date is None:
        step.start_date = now

    if changes:
        write_audit(
            action="WORKFLOW_UPDATED",
            ticket_id=ticket_id,
            step_id=step.id,
            category=_audit_category(changes),
            description=remarks or f"Updated step {step.step_number}: {', '.join(sorted(changes))}",
            performed_by=actor_id,
            old_data={k: str(v[0]) if v[0] is not None else None for k, v in changes.items()},
            new_data={k: str(v[1]) if v[1] is not None else None for k, v in changes.items()},
        )
    commit_or_unavailable()
    return step.to_dict()


def delete_step(ticket_id: int, step_id: int, actor_id: int | None = None) -> dict:
    """Delete a step and its sub-steps, releasing their allocations."""
    step = get_step(step_id, ticket_id)
    S = WorkflowStep
    q = select(S).where(S.ticket_id == ticket_id, S.level_1 == step.level_1)
    if step.depth >= 2:
        q = q.where(S.level_2 == step.level_2)
    if step.depth == 3:
        q = q.where(S.level_3 == step.level_3)
    subtree = db.session.execute(q).scalars().all()
    subtree_ids = [s.id for s in subtree]

    blob_paths = [
        (d.bucket, d.storage_path)
        for d in db.session.execute(
            select(Document).where(Document.step_id.in_(subtree_ids))
        ).scalars()
    ]

    released = 0
    for sid in subtree_ids:
        released += release_step_allocations(sid)
    db.session.execute(
        delete(WorkflowStepDependency).where(
            or_(
                WorkflowStepDependency.depends_on_step_id.in_(subtree_ids),
                WorkflowStepDependency.step_id.in_(subtree_ids),
            )
        ),
        execution_options={"synchronize_session": False},
    )
    db.session.execute(
        delete(Document).where(Document.step_id.in_(subtree_ids)),
        execution_options={"synchronize_session": False},
    )
    # children first so parent_step_id references go away before their parent
    for s in sorted(subtree, key=lambda s: s.depth, reverse=True):
        db.session.delete(s)
        db.session.flush()

    write_audit(
        action="WORKFLOW_DELETED",
        ticket_id=ticket_id,
        category="workflow_action",
        description=f"Deleted workflow step {step.step_number}: {step.title}",
        performed_by=actor_id,
        old_data={"step_ids": subtree_ids, "released_allocations": released},
    )
    commit_or_unavailable()
    logger.info("Deleted workflow steps %s ticket=%s (released %d allocations)",
                subtree_ids, ticket_id, released)

    store = get_blob_store()
    for bucket, path in blob_paths:
        try:
            store.remove(bucket, [path])
        except (BackendUnavailableError, NotFoundError):
            logger.exception("Orphaned blob after step delete: %s/%s", bucket, path)
    return {"deleted_step_ids": subtree_ids, "released_allocations": released}


def list_steps(ticket_id: int) -> list[dict]:
    ticket = get_or_raise(Ticket, ticket_id, "Ticket")
    return [s.to_dict() for s in ticket.steps]


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


def add_step_comment(step_id: int, content: str, actor_id: int | None = None) -> dict:
    step = get_step(step_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("Comment cannot be empty", details={"content": "required"})
    comment = WorkflowComment(step_id=step.id, content=content, created_by=actor_id)
    db.session.add(comment)
    db.session.flush()
    write_audit(
        action="COMMENT_ADDED",
        ticket_id=step.ticket_id,
        step_id=step.id,
        category="workflow_action",
        description=content[:200],
        performed_by=actor_id,
    )
    commit_or_unavailable()
    return comment.to_dict()


def list_step_comments(step_id: int) -> list[dict]:
    step = get_step(step_id)
    return [c.to_dict() for c in step.comments]
