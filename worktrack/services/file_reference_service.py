"""
Step File References — Service Layer.

Business logic for:
    - Templates: validated lists of reference names with mandatory flags;
      delete refused while steps use them (deactivate instead)
    - Step references: built from a step's ``mandatory_documents`` /
      ``optional_documents`` lists and from applied templates
    - Attaching an uploaded step document to a reference
    - Completion gate: mandatory references without a document

A step's two name lists and its reference rows are kept in step by
``sync_step_document_lists``; applying a template merges its names into the
lists and syncs.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, func, select

from worktrack.core.exceptions import (
    ConflictError,
    DependencyViolationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.audit import write_audit
from worktrack.models.auth import User
from worktrack.models.document import Document
from worktrack.models.file_reference import FileReferenceTemplate, StepFileReference
from worktrack.models.ticket import WorkflowStep
from worktrack.utils.helpers import commit_or_unavailable, get_or_raise

logger = logging.getLogger(__name__)

_TEMPLATE_FIELDS = ("template_name", "description", "file_references", "mandatory_flags", "is_active")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _require_eo(actor_id, message: str) -> User:
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or actor.role != "eo":
        raise PermissionDeniedError(message)
    return actor


def _step(step_id: int, ticket_id: int | None = None) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if step is None or (ticket_id is not None and step.ticket_id != ticket_id):
        raise NotFoundError("WorkflowStep", step_id)
    return step


def _step_references(step_id: int) -> list[StepFileReference]:
    q = (
        select(StepFileReference)
        .where(StepFileReference.step_id == step_id)
        .order_by(StepFileReference.is_mandatory.desc(), StepFileReference.id)
        .execution_options(populate_existing=True)
    )
    return list(db.session.execute(q).scalars())


def validate_template_content(file_references, mandatory_flags=None) -> tuple[list[str], list[bool]]:
    """Check a template's reference names and flags.

    Names must be a non-empty list of distinct non-empty strings; flags,
    when given, a list of booleans of the same length.  Missing flags
    default to optional.
    """
    if not isinstance(file_references, list) or not file_references:
        raise ValidationError("file_references must be a non-empty list",
                              details={"file_references": "non-empty list"})
    names: list[str] = []
    for index, name in enumerate(file_references):
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"file_references[{index}] must be a non-empty string",
                                  details={"file_references": index})
        if name.strip() in names:
            raise ValidationError(f"Duplicate file reference: {name.strip()}",
                                  details={"file_references": name.strip()})
        names.append(name.strip())

    if mandatory_flags is None:
        return names, [False] * len(names)
    if not isinstance(mandatory_flags, list) or len(mandatory_flags) != len(names):
        raise ValidationError("mandatory_flags must be a list matching file_references in length",
                              details={"mandatory_flags": len(names)})
    if not all(isinstance(flag, bool) for flag in mandatory_flags):
        raise ValidationError("mandatory_flags must contain only booleans",
                              details={"mandatory_flags": "booleans"})
    return names, list(mandatory_flags)


def _template_name(value) -> str:
    name = value.strip() if isinstance(value, str) else ""
    if not name:
        raise ValidationError("template_name is required", details={"template_name": "required"})
    return name


def _check_name_free(name: str, exclude_id: int | None = None) -> None:
    q = select(func.count()).select_from(FileReferenceTemplate).where(
        FileReferenceTemplate.template_name == name
    )
    if exclude_id is not None:
        q = q.where(FileReferenceTemplate.id != exclude_id)
    if db.session.execute(q).scalar():
        raise ConflictError("FileReferenceTemplate", "template_name", name)


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def create_template(data: dict, actor_id: int | None = None) -> dict:
    _require_eo(actor_id, "Only an EO can create file reference templates")
    name = _template_name(data.get("template_name"))
    names, flags = validate_template_content(data.get("file_references"), data.get("mandatory_flags"))
    _check_name_free(name)

    template = FileReferenceTemplate(
        template_name=name,
        description=data.get("description") or "",
        file_references=names,
        mandatory_flags=flags,
        is_active=bool(data.get("is_active", True)),
        uploaded_by=actor_id,
    )
    db.session.add(template)
    commit_or_unavailable()
    logger.info("Created file reference template id=%s name=%r (%d refs)", template.id, name, len(names))
    return template.to_dict()


def update_template(template_id: int, data: dict, actor_id: int | None = None) -> dict:
    _require_eo(actor_id, "Only an EO can change file reference templates")
    template = get_or_raise(FileReferenceTemplate, template_id, "FileReferenceTemplate")

    if "template_name" in data:
        name = _template_name(data["template_name"])
        _check_name_free(name, exclude_id=template.id)
        template.template_name = name
    if "file_references" in data:
        # a new reference list without flags makes every reference optional
        template.file_references, template.mandatory_flags = validate_template_content(
            data["file_references"], data.get("mandatory_flags"),
        )
    elif "mandatory_flags" in data:
        template.file_references, template.mandatory_flags = validate_template_content(
            template.file_references, data["mandatory_flags"],
        )
    if "description" in data:
        template.description = data["description"] or ""
    if "is_active" in data:
        template.is_active = bool(data["is_active"])

    commit_or_unavailable()
    return template.to_dict()


def delete_template(template_id: int, actor_id: int | None = None) -> None:
    """Hard delete; refused while any step reference came from the template."""
    _require_eo(actor_id, "Only an EO can delete file reference templates")
    template = get_or_raise(FileReferenceTemplate, template_id, "FileReferenceTemplate")
    in_use = db.session.execute(
        select(func.count()).select_from(StepFileReference)
        .where(StepFileReference.template_id == template_id)
    ).scalar()
    if in_use:
        raise DependencyViolationError(
            "FileReferenceTemplate", template_id, "step file references",
            message="Cannot delete template: it is in use by workflow steps. "
                    "Please deactivate it instead.",
        )
    db.session.delete(template)
    commit_or_unavailable()
    logger.info("Deleted file reference template id=%s", template_id)


def get_template(template_id: int) -> dict:
    return get_or_raise(FileReferenceTemplate, template_id, "FileReferenceTemplate").to_dict()


def list_templates(active_only: bool = False) -> list[dict]:
    q = select(FileReferenceTemplate)
    if active_only:
        q = q.where(FileReferenceTemplate.is_active.is_(True))
    q = q.order_by(FileReferenceTemplate.created_at.desc(), FileReferenceTemplate.id.desc())
    return [t.to_dict() for t in db.session.execute(q).scalars()]


# ═════════════════════════════════════════════════════════════════════════════
# Step references
# ═════════════════════════════════════════════════════════════════════════════


def sync_step_document_lists(step: WorkflowStep, actor_id=None, template_id: int | None = None) -> dict:
    """Make the step's reference rows match its name lists (no commit).

    Every listed name gets a reference; mandatory wins when a name is in
    both lists.  References whose name left both lists are removed, along
    with their link to any uploaded document (the document itself stays).

    Returns:
        {added: [name], removed: [name]}
    """
    mandatory = list(step.mandatory_documents or [])
    wanted = {name: True for name in mandatory}
    for name in step.optional_documents or []:
        wanted.setdefault(name, False)
    if step.optional_documents and any(name in mandatory for name in step.optional_documents):
        step.optional_documents = [n for n in step.optional_documents if n not in mandatory]

    existing = {ref.reference_name: ref for ref in _step_references(step.id)}
    added, removed = [], []
    for name, is_mandatory in wanted.items():
        ref = existing.get(name)
        if ref is None:
            db.session.add(StepFileReference(
                step_id=step.id, template_id=template_id,
                reference_name=name, is_mandatory=is_mandatory,
            ))
            added.append(name)
        elif ref.is_mandatory != is_mandatory:
            ref.is_mandatory = is_mandatory
    stale = [ref.id for name, ref in existing.items() if name not in wanted]
    if stale:
        db.session.execute(
            delete(StepFileReference).where(StepFileReference.id.in_(stale)),
            execution_options={"synchronize_session": False},
        )
        removed = [name for name in existing if name not in wanted]
    db.session.flush()
    return {"added": added, "removed": removed}


def apply_template(ticket_id: int, step_id: int, template_id: int, actor_id: int | None = None) -> list[dict]:
    """Merge an active template's references into a step."""
    _require_eo(actor_id, "Only an EO can apply file reference templates")
    step = _step(step_id, ticket_id)
    template = get_or_raise(FileReferenceTemplate, template_id, "FileReferenceTemplate")
    if not template.is_active:
        raise ValidationError("Template is inactive", details={"template_id": template_id})

    mandatory = list(step.mandatory_documents or [])
    optional = list(step.optional_documents or [])
    for name, is_mandatory in template.entries():
        if is_mandatory and name not in mandatory:
            mandatory.append(name)
        elif not is_mandatory and name not in mandatory and name not in optional:
            optional.append(name)
    step.mandatory_documents = mandatory
    step.optional_documents = optional
    result = sync_step_document_lists(step, actor_id, template_id=template.id)

    write_audit(
        action="FILE_REFERENCES_APPLIED",
        ticket_id=step.ticket_id,
        step_id=step.id,
        category="workflow_action",
        description=f"Applied template {template.template_name!r} to step {step.step_number}",
        performed_by=actor_id,
        new_data={"template_id": template.id, "added": result["added"]},
    )
    commit_or_unavailable()
    logger.info("Applied template id=%s to step id=%s: %d added", template.id, step.id, len(result["added"]))
    return get_step_file_references(step.id)


def get_step_file_references(step_id: int) -> list[dict]:
    _step(step_id)
    return [ref.to_dict() for ref in _step_references(step_id)]


def get_incomplete_references(step_id: int) -> list[dict]:
    """Mandatory references that have no document yet."""
    return [ref.to_dict() for ref in _step_references(step_id) if ref.is_mandatory and not ref.is_uploaded]


def mandatory_references_complete(step_id: int) -> bool:
    missing = db.session.execute(
        select(func.count()).select_from(StepFileReference).where(
            StepFileReference.step_id == step_id,
            StepFileReference.is_mandatory.is_(True),
            StepFileReference.document_id.is_(None),
        )
    ).scalar()
    return not missing


def link_document(ref: StepFileReference, document: Document | None, actor_id=None) -> None:
    """Point ``ref`` at ``document`` (or clear it); no commit."""
    if document is not None and document.step_id != ref.step_id:
        raise ValidationError("Document belongs to a different step",
                              details={"document_id": document.id})
    ref.document_id = document.id if document is not None else None
    ref.uploaded_by = actor_id if document is not None else None
    ref.uploaded_at = datetime.now(timezone.utc) if document is not None else None
    db.session.flush()


def get_reference(step_id: int, reference_id: int) -> StepFileReference:
    ref = db.session.get(StepFileReference, reference_id)
    if ref is None or ref.step_id != step_id:
        raise NotFoundError("StepFileReference", reference_id)
    return ref


def attach_document(step_id: int, reference_id: int, document_id: int | None, actor_id: int) -> dict:
    """Link an uploaded step document to a reference, or unlink with ``None``.

    Only an EO or the step's assignee may do so.
    """
    step = _step(step_id)
    actor = db.session.get(User, actor_id) if actor_id is not None else None
    if actor is None or (actor.role != "eo" and step.assigned_to != actor.id):
        raise PermissionDeniedError("You can only manage documents of steps assigned to you")
    ref = get_reference(step_id, reference_id)
    document = get_or_raise(Document, document_id, "Document") if document_id is not None else None
    link_document(ref, document, actor_id)

    write_audit(
        action="FILE_REFERENCE_LINKED" if document is not None else "FILE_REFERENCE_UNLINKED",
        ticket_id=step.ticket_id,
        step_id=step.id,
        category="document_action",
        description=f"{ref.reference_name}: "
                    + (f"linked {document.name}" if document is not None else "document unlinked"),
        performed_by=actor_id,
        metadata={"reference_id": ref.id, "document_id": document_id},
    )
    commit_or_unavailable()
    return ref.to_dict()
