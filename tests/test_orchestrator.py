import base64

import pytest
from google.auth.exceptions import RefreshError

from conftest import FOLDER_NAME, http_error
from core.errors import Internal, InvalidArgument, PermissionDenied, Unauthenticated
from core.file_records import FILES_COLLECTION, UploadedFileRecord
from services.orchestrator import FileOrchestrator, decode_file_content

PDF_B64 = base64.b64encode(b"%PDF-1.4 tiny").decode()


@pytest.fixture
def linked(tokens):
    tokens.save_refresh_token("u1", "refresh-1")


def _stored_records(store):
    return store._data.get(FILES_COLLECTION, {})


def test_upload_provisions_folder_uploads_and_records(orchestrator, drive, records, built_clients, linked):
    result = orchestrator.upload(
        "u1", PDF_B64, "a.pdf", "application/pdf",
        title="Chapter 1", description="Notes", subject="Biology",
    )

    assert drive.calls == ["files.list", "folders.create", "files.create", "permissions.create"]
    folder = drive.folders()[0]
    assert folder["name"] == FOLDER_NAME
    uploaded = drive.items[result["file_id"]]
    assert uploaded["parents"] == [folder["id"]]
    assert uploaded["content"] == b"%PDF-1.4 tiny"
    assert drive.grants[result["file_id"]] == [{"type": "anyone", "role": "reader"}]

    record = records.get(result["record_id"])
    assert record.drive_file_id == result["file_id"]
    assert record.owner_id == "u1"
    assert (record.title, record.description, record.subject) == ("Chapter 1", "Notes", "Biology")
    assert record.file_url == result["web_view_link"]
    assert result["direct_download_link"] == (
        f"https://drive.google.com/uc?export=download&id={result['file_id']}"
    )
    # Upload path uses the long timeout
    assert built_clients[0][1] == 120.0


def test_second_upload_reuses_folder(orchestrator, drive, linked):
    orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    orchestrator.upload("u1", PDF_B64, "b.pdf", "application/pdf")
    assert len(drive.folders()) == 1


def test_upload_guesses_mime_type(orchestrator, drive, records, linked):
    result = orchestrator.upload("u1", PDF_B64, "a.pdf")
    assert records.get(result["record_id"]).mime_type == "application/pdf"


def test_upload_accepts_data_url(orchestrator, drive, linked):
    result = orchestrator.upload("u1", f"data:application/pdf;base64,{PDF_B64}", "a.pdf")
    assert drive.items[result["file_id"]]["content"] == b"%PDF-1.4 tiny"


def test_upload_into_requested_folder(orchestrator, drive, linked):
    orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf", folder_name="Homework")
    orchestrator.upload("u1", PDF_B64, "b.pdf", "application/pdf", folder_name="  ")

    assert sorted(f["name"] for f in drive.folders()) == sorted(["Homework", FOLDER_NAME])


def test_failed_metadata_write_leaves_no_record(orchestrator, drive, store, records, linked, monkeypatch):
    def broken_add(record):
        raise OSError("disk full")

    monkeypatch.setattr(records, "add", broken_add)

    with pytest.raises(Internal):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    assert _stored_records(store) == {}
    assert drive.calls[-1] == "files.delete"


def test_upload_without_link_is_unauthenticated(orchestrator, drive, store):
    with pytest.raises(Unauthenticated):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    assert drive.calls == []
    assert _stored_records(store) == {}


@pytest.mark.parametrize(
    "content, name",
    [("", "a.pdf"), ("not base64!!", "a.pdf"), (PDF_B64, ""), (PDF_B64, "   ")],
)
def test_upload_rejects_bad_input(orchestrator, drive, linked, content, name):
    with pytest.raises(InvalidArgument):
        orchestrator.upload("u1", content, name, "application/pdf")
    assert drive.calls == []


def test_upload_rejects_oversized_file(orchestrator, drive, linked):
    big = base64.b64encode(b"x" * 2048).decode()
    with pytest.raises(InvalidArgument):
        orchestrator.upload("u1", big, "big.bin")
    assert drive.calls == []


def test_invalid_grant_clears_link(orchestrator, drive, tokens, store, linked):
    drive.fail["files.list"] = RefreshError("invalid_grant: Token has been expired or revoked.")

    with pytest.raises(Unauthenticated):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    state = tokens.get("u1")
    assert state.linked is False
    assert state.refresh_token is None
    assert _stored_records(store) == {}

    # Stale credentials are gone, so the next attempt fails before touching Drive
    drive.calls.clear()
    with pytest.raises(Unauthenticated):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    assert drive.calls == []


def test_provider_error_is_internal_and_keeps_link(orchestrator, drive, tokens, store, linked):
    drive.fail["files.create"] = http_error(500, "Backend Error")

    with pytest.raises(Internal):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    assert tokens.get("u1").linked is True
    assert _stored_records(store) == {}


def test_permission_failure_rolls_back_orphan(orchestrator, drive, store, linked):
    drive.fail["permissions.create"] = http_error(403, "Sharing disabled")

    with pytest.raises(Internal):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    assert "files.delete" in drive.calls
    assert [i for i in drive.items.values() if i["name"] == "a.pdf"] == []
    assert _stored_records(store) == {}


def test_permission_failure_without_rollback_leaves_orphan(clients, tokens, records, drive, store, linked):
    orchestrator = FileOrchestrator(clients, tokens, records, FOLDER_NAME, rollback_orphans=False)
    drive.fail["permissions.create"] = http_error(403, "Sharing disabled")

    with pytest.raises(Internal):
        orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    assert "files.delete" not in drive.calls
    assert [i["name"] for i in drive.items.values() if i["name"] == "a.pdf"] == ["a.pdf"]
    assert _stored_records(store) == {}


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------
def test_delete_removes_drive_file_then_record(orchestrator, drive, records, linked):
    uploaded = orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    result = orchestrator.delete("u1", uploaded["record_id"], uploaded["file_id"])

    assert result["success"] is True
    assert uploaded["file_id"] not in drive.items
    assert records.get(uploaded["record_id"]) is None


def test_delete_falls_back_to_recorded_drive_id(orchestrator, drive, records, linked):
    uploaded = orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")

    orchestrator.delete("u1", uploaded["record_id"])

    assert uploaded["file_id"] not in drive.items
    assert records.get(uploaded["record_id"]) is None


def test_delete_tolerates_missing_drive_file(orchestrator, records, linked):
    record = records.add(
        UploadedFileRecord(drive_file_id="gone", owner_id="u1", file_name="a.pdf", mime_type="application/pdf")
    )

    result = orchestrator.delete("u1", record.id, "gone")

    assert result["success"] is True
    assert records.get(record.id) is None


def test_delete_keeps_record_on_unexpected_drive_error(orchestrator, drive, records, linked):
    uploaded = orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    drive.fail["files.delete"] = http_error(500, "Backend Error")

    with pytest.raises(Internal):
        orchestrator.delete("u1", uploaded["record_id"], uploaded["file_id"])

    assert records.get(uploaded["record_id"]) is not None


def test_delete_with_expired_grant_clears_link(orchestrator, drive, records, tokens, linked):
    uploaded = orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    drive.fail["files.delete"] = RefreshError("invalid_grant")

    with pytest.raises(Unauthenticated):
        orchestrator.delete("u1", uploaded["record_id"], uploaded["file_id"])

    assert tokens.get("u1").linked is False
    assert records.get(uploaded["record_id"]) is not None


def test_delete_of_foreign_record_is_denied(orchestrator, records, tokens, linked):
    record = records.add(
        UploadedFileRecord(drive_file_id="d1", owner_id="u2", file_name="a.pdf", mime_type="application/pdf")
    )
    with pytest.raises(PermissionDenied):
        orchestrator.delete("u1", record.id, "d1")
    assert records.get(record.id) is not None


def test_delete_rejects_mismatched_drive_file_id(orchestrator, drive, records, linked):
    first = orchestrator.upload("u1", PDF_B64, "a.pdf", "application/pdf")
    second = orchestrator.upload("u1", PDF_B64, "b.pdf", "application/pdf")
    calls_before = list(drive.calls)

    with pytest.raises(InvalidArgument):
        orchestrator.delete("u1", first["record_id"], second["file_id"])

    assert drive.calls == calls_before
    assert first["file_id"] in drive.items
    assert second["file_id"] in drive.items
    assert records.get(first["record_id"]) is not None


def test_delete_requires_record_id(orchestrator, linked):
    with pytest.raises(InvalidArgument):
        orchestrator.delete("u1", "", "d1")


def test_decode_file_content():
    assert decode_file_content(PDF_B64) == b"%PDF-1.4 tiny"
    with pytest.raises(InvalidArgument):
        decode_file_content(base64.b64encode(b"").decode())
