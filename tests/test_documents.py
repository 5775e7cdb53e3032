"""
WorkTrack
Tests — Document & attachment store.

Covers:
    - Upload validation (size, empty, MIME type)
    - Ticket attachments, step documents, completion certificates
    - Delete permissions
    - Attachment copy with per-file failure isolation
    - Signed download links (valid, expired, tampered)
    - Progress documents: soft delete with reason, comment edit
"""

import io

import pytest

from worktrack.core.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from worktrack.models import db
from worktrack.models.document import Document, ProgressDocument
from worktrack.services import document_service, ticket_service, workflow_service
from worktrack.services.document_service import UploadedFile
from worktrack.storage import get_blob_store

PDF = b"%PDF-1.4 minimal"


def _h(user):
    return {"X-User-Id": str(user.id)}


def _pdf(name="report.pdf", data=PDF):
    return UploadedFile(name=name, content_type="application/pdf", data=data)


def _upload(ticket_id, actor_id, name="report.pdf", **kw):
    return document_service.upload_document(ticket_id, _pdf(name), actor_id, **kw)


# ═════════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═════════════════════════════════════════════════════════════════════════════

class TestValidateFile:
    def test_accepts_pdf(self):
        document_service.validate_file("a.pdf", "application/pdf", 10)

    def test_rejects_oversized(self):
        with pytest.raises(ValidationError, match="exceeds 5MB"):
            document_service.validate_file("a.pdf", "application/pdf", 5 * 1024 * 1024 + 1)

    def test_exact_limit_allowed(self):
        document_service.validate_file("a.pdf", "application/pdf", 5 * 1024 * 1024)

    def test_rejects_empty(self):
        with pytest.raises(ValidationError, match="empty"):
            document_service.validate_file("a.pdf", "application/pdf", 0)

    def test_rejects_unknown_type(self):
        with pytest.raises(ValidationError, match="not supported"):
            document_service.validate_file("a.exe", "application/x-msdownload", 10)

    def test_invalid_upload_stores_nothing(self, eo, ticket):
        bad = UploadedFile(name="run.sh", content_type="text/x-shellscript", data=b"echo")
        with pytest.raises(ValidationError):
            document_service.upload_document(ticket["id"], bad, eo.id)
        assert db.session.query(Document).count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# TICKET & STEP DOCUMENTS
# ═════════════════════════════════════════════════════════════════════════════

class TestDocuments:
    def test_upload_stores_blob_and_metadata(self, eo, ticket):
        doc = _upload(ticket["id"], eo.id, "site photo.pdf")
        assert doc["size"] == len(PDF)
        assert doc["storage_path"].startswith(f"{ticket['id']}/attachments/")
        assert doc["storage_path"].endswith("_site_photo.pdf")
        assert get_blob_store().exists("step-documents", doc["storage_path"])

    def test_attachment_step_and_certificate_views(self, eo, ticket):
        step = workflow_service.add_step(ticket["id"], {"title": "Inspect"}, eo.id)
        _upload(ticket["id"], eo.id, "quote.pdf")
        _upload(ticket["id"], eo.id, "inspection.pdf", step_id=step["id"])
        _upload(ticket["id"], eo.id, "cert.pdf", is_completion_certificate=True)

        assert [d["name"] for d in document_service.get_ticket_attachments(ticket["id"])] == ["quote.pdf"]
        assert [d["name"] for d in document_service.list_documents(ticket["id"], step["id"])] == ["inspection.pdf"]
        assert len(document_service.list_documents(ticket["id"])) == 3
        certs = document_service.get_completion_certificates(ticket["id"])
        assert [d["name"] for d in certs] == ["cert.pdf"]
        assert document_service.has_completion_certificate(ticket["id"]) is True

    def test_upload_to_foreign_step_not_found(self, eo, ticket):
        other = ticket_service.create_ticket({"title": "Other"}, eo.id)
        step = workflow_service.add_step(other["id"], {"title": "Elsewhere"}, eo.id)
        with pytest.raises(NotFoundError):
            _upload(ticket["id"], eo.id, step_id=step["id"])

    def test_uploader_can_delete(self, employee, ticket):
        doc = _upload(ticket["id"], employee.id)
        document_service.delete_document(doc["id"], employee.id)
        assert db.session.get(Document, doc["id"]) is None
        assert not get_blob_store().exists("step-documents", doc["storage_path"])

    def test_other_user_cannot_delete(self, employee, make_user, ticket):
        doc = _upload(ticket["id"], employee.id)
        other = make_user("emp.two", "employee")
        with pytest.raises(PermissionDeniedError, match="only delete documents you uploaded"):
            document_service.delete_document(doc["id"], other.id)

    def test_eo_can_delete_any(self, eo, employee, ticket):
        doc = _upload(ticket["id"], employee.id)
        document_service.delete_document(doc["id"], eo.id)
        assert db.session.get(Document, doc["id"]) is None

    def test_upload_via_api(self, client, eo, ticket):
        res = client.post(
            f"/api/v1/tickets/{ticket['id']}/documents",
            data={"file": (io.BytesIO(PDF), "plan.pdf", "application/pdf"), "is_mandatory": "true"},
            headers=_h(eo),
            content_type="multipart/form-data",
        )
        assert res.status_code == 201
        body = res.get_json()
        assert body["name"] == "plan.pdf"
        assert body["is_mandatory"] is True

    def test_upload_via_api_rejects_type(self, client, eo, ticket):
        res = client.post(
            f"/api/v1/tickets/{ticket['id']}/documents",
            data={"file": (io.BytesIO(b"x"), "notes.txt", "text/plain")},
            headers=_h(eo),
            content_type="multipart/form-data",
        )
        assert res.status_code == 422

    def test_upload_via_api_missing_file(self, client, eo, ticket):
        res = client.post(
            f"/api/v1/tickets/{ticket['id']}/documents",
            data={"is_mandatory": "true"},
            headers=_h(eo),
            content_type="multipart/form-data",
        )
        assert res.status_code == 400


# ═════════════════════════════════════════════════════════════════════════════
# COPY
# ═════════════════════════════════════════════════════════════════════════════

class TestCopyAttachments:
    def test_copy_all(self, eo, ticket):
        _upload(ticket["id"], eo.id, "a.pdf")
        _upload(ticket["id"], eo.id, "b.pdf")
        target = ticket_service.create_ticket({"title": "Follow-up"}, eo.id)
        result = document_service.copy_ticket_attachments(ticket["id"], target["id"], eo.id)
        assert result == {"success_count": 2, "failed_count": 0, "errors": []}
        copied = document_service.get_ticket_attachments(target["id"])
        assert sorted(d["name"] for d in copied) == ["a.pdf", "b.pdf"]
        assert all(d["storage_path"].startswith(f"{target['id']}/copied/") for d in copied)

    def test_missing_blob_does_not_stop_the_batch(self, eo, ticket):
        lost = _upload(ticket["id"], eo.id, "lost.pdf")
        _upload(ticket["id"], eo.id, "kept.pdf")
        get_blob_store().remove("step-documents", [lost["storage_path"]])
        target = ticket_service.create_ticket({"title": "Follow-up"}, eo.id)

        result = document_service.copy_ticket_attachments(ticket["id"], target["id"], eo.id)
        assert result["success_count"] == 1
        assert result["failed_count"] == 1
        assert "lost.pdf" in result["errors"][0]
        assert [d["name"] for d in document_service.get_ticket_attachments(target["id"])] == ["kept.pdf"]

    def test_upload_failure_does_not_stop_the_batch(self, eo, ticket, monkeypatch):
        _upload(ticket["id"], eo.id, "broken.pdf")
        _upload(ticket["id"], eo.id, "fine.pdf")
        target = ticket_service.create_ticket({"title": "Follow-up"}, eo.id)
        store = get_blob_store()
        real_upload = store.upload

        def flaky_upload(bucket, path, data, content_type):
            if "/copied/" in path and path.endswith("broken.pdf"):
                raise BackendUnavailableError("Blob store unavailable")
            return real_upload(bucket, path, data, content_type)

        monkeypatch.setattr(store, "upload", flaky_upload)
        result = document_service.copy_ticket_attachments(ticket["id"], target["id"], eo.id)
        assert result["success_count"] == 1
        assert result["failed_count"] == 1
        assert result["errors"][0].startswith("Failed to upload broken.pdf")
        assert [d["name"] for d in document_service.get_ticket_attachments(target["id"])] == ["fine.pdf"]

    def test_copy_selected_ids_via_api(self, client, eo, ticket):
        a = _upload(ticket["id"], eo.id, "a.pdf")
        _upload(ticket["id"], eo.id, "b.pdf")
        target = ticket_service.create_ticket({"title": "Follow-up"}, eo.id)
        res = client.post(
            f"/api/v1/tickets/{target['id']}/attachments/copy",
            json={"source_ticket_id": ticket["id"], "attachment_ids": [a["id"]]},
            headers=_h(eo),
        )
        assert res.status_code == 200
        assert res.get_json()["success_count"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# SIGNED DOWNLOADS
# ═════════════════════════════════════════════════════════════════════════════

class TestSignedDownload:
    def test_download_with_valid_link(self, client, eo, ticket):
        doc = _upload(ticket["id"], eo.id, "plan.pdf")
        link = client.get(f"/api/v1/documents/{doc['id']}/url").get_json()
        assert link["url"].startswith("/api/v1/files/")
        res = client.get(link["url"])
        assert res.status_code == 200
        assert res.data == PDF
        assert res.mimetype == "application/pdf"

    def test_expired_link_forbidden(self, client, eo, ticket):
        doc = _upload(ticket["id"], eo.id, "plan.pdf")
        link = document_service.get_document_url(doc["id"], expires_in=-10)
        res = client.get(link["url"])
        assert res.status_code == 403
        assert "expired" in res.get_json()["error"]

    def test_tampered_link_forbidden(self, client, eo, ticket):
        doc = _upload(ticket["id"], eo.id, "plan.pdf")
        url = document_service.get_document_url(doc["id"])["url"]
        res = client.get(url[:-3] + "abc")
        assert res.status_code == 403

    def test_missing_document_url_is_404(self, client):
        assert client.get("/api/v1/documents/9999/url").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# PROGRESS DOCUMENTS
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def progress_doc(employee, eo, ticket):
    step = workflow_service.add_step(ticket["id"], {"title": "Plaster", "assigned_to": employee.id}, eo.id)
    doc = document_service.upload_progress_document(step["id"], _pdf("wall.pdf"), employee.id, comment="First coat")
    return step, doc


class TestProgressDocuments:
    def test_upload_links_progress_audit(self, progress_doc):
        step, doc = progress_doc
        assert doc["audit_log_id"] is not None
        assert doc["file_path"].split("/")[3] == "progress"
        assert get_blob_store().exists("workflow-progress-documents", doc["file_path"])

    def test_soft_delete_requires_reason(self, employee, progress_doc):
        _, doc = progress_doc
        with pytest.raises(ValidationError, match="at least 5"):
            document_service.delete_progress_document(doc["id"], employee.id, "oops")

    def test_soft_delete_keeps_row_and_blob(self, employee, progress_doc):
        step, doc = progress_doc
        result = document_service.delete_progress_document(doc["id"], employee.id, "Wrong photo uploaded")
        assert result["is_deleted"] is True
        assert result["delete_reason"] == "Wrong photo uploaded"
        assert document_service.list_progress_documents(step["id"]) == []
        assert len(document_service.list_progress_documents(step["id"], include_deleted=True)) == 1
        assert get_blob_store().exists("workflow-progress-documents", doc["file_path"])
        with pytest.raises(NotFoundError):
            document_service.get_progress_document_url(doc["id"])

    def test_delete_twice_rejected(self, employee, progress_doc):
        _, doc = progress_doc
        document_service.delete_progress_document(doc["id"], employee.id, "Wrong photo uploaded")
        with pytest.raises(ValidationError, match="already been deleted"):
            document_service.delete_progress_document(doc["id"], employee.id, "Wrong photo uploaded")

    def test_stranger_cannot_delete(self, make_user, progress_doc):
        _, doc = progress_doc
        vendor = make_user("vendor.one", "vendor")
        with pytest.raises(PermissionDeniedError):
            document_service.delete_progress_document(doc["id"], vendor.id, "Not relevant")

    def test_dept_officer_can_delete(self, dept_officer, progress_doc):
        _, doc = progress_doc
        document_service.delete_progress_document(doc["id"], dept_officer.id, "Duplicate upload")
        row = db.session.get(ProgressDocument, doc["id"], populate_existing=True)
        assert row.deleted_by == dept_officer.id

    def test_comment_edit_by_uploader_only(self, employee, eo, progress_doc):
        _, doc = progress_doc
        result = document_service.update_progress_document_comment(doc["id"], employee.id, "Second coat")
        assert result["comment"] == "Second coat"
        with pytest.raises(PermissionDeniedError):
            document_service.update_progress_document_comment(doc["id"], eo.id, "Hijack")

    def test_delete_via_api_needs_reason(self, client, employee, progress_doc):
        _, doc = progress_doc
        res = client.delete(f"/api/v1/progress-documents/{doc['id']}", json={}, headers=_h(employee))
        assert res.status_code == 400
        res = client.delete(f"/api/v1/progress-documents/{doc['id']}",
                            json={"reason": "Blurry image"}, headers=_h(employee))
        assert res.status_code == 200
