"""
Persistence & Forensic Tests
============================

INVARIANTS TESTED:
1. A reopened assessment equals the one that was persisted
2. Storage is append-only; later version records supersede earlier ones
3. Tampered versions or changes are fatal on load, never repaired
4. Storage write failures are audited and never roll back a mutation
"""

import json

import pytest

from review_engine.contracts.base import ApprovalStatus, Error, ErrorCode
from review_engine.contracts.errors import ChainIntegrityError, ChecksumMismatchError, NotFoundError
from review_engine.forensic import main as forensic_main, render_ascii_dag
from review_engine.storage import (
    FileStorageBackend, InMemoryStorageBackend, StorageConfig, StorageWriteResult
)

from tests.fixtures import LEAD, answer, head_of, make_engine, open_review


def populate(engine):
    """Responses, a branch and a merge: every kind of persisted record."""
    aid = open_review(engine, baseline={"Q5": 1})
    answer(engine, aid, "R1", "Q1", 3)
    engine.record_note(aid, "Q1", "See policy doc", "user-R1", head_of(engine, aid))
    engine.branch(aid, head_of(engine, aid), "x", LEAD)
    answer(engine, aid, "R2", "Q6", 2, branch="x")
    engine.merge(aid, [head_of(engine, aid), head_of(engine, aid, "x")], LEAD)
    return aid


def snapshot(engine, aid):
    return {
        "heads": engine.heads(aid),
        "content": engine.head(aid).content,
        "changes": [c.entry_hash for c in engine.changes(aid)],
        "workflow": engine.workflow(aid),
        "responses": engine.role_responses(aid),
        "branch_responses": engine.role_responses(aid, "x"),
        "assignments": engine.assignments(aid, engine.clock.peek()),
        "versions": [v.version_id for v in engine.history(aid)],
    }


class FailingChangeStorage(InMemoryStorageBackend):
    """Accepts everything except change records."""

    def append_change_record(self, assessment_id, change):
        return StorageWriteResult(
            success=False,
            error=Error.create(ErrorCode.STORAGE_WRITE_FAILED, "disk full"),
        )


class TestRoundTrip:

    def test_memory_round_trip(self, storage):
        writer = make_engine(storage=storage)
        aid = populate(writer)

        reader = make_engine(storage=storage)
        reader.open_assessment(aid)

        assert snapshot(reader, aid) == snapshot(writer, aid)
        assert reader.verify_log(aid)
        assert reader.list_assessments() == [aid]

    def test_file_round_trip(self, tmp_path):
        writer = make_engine(storage=FileStorageBackend(str(tmp_path)))
        aid = populate(writer)

        reader = make_engine(storage=FileStorageBackend(str(tmp_path)))

        assert snapshot(reader, aid) == snapshot(writer, aid)
        for name in ("assessment.jsonl", "versions.jsonl", "changes.jsonl"):
            assert (tmp_path / aid / name).exists()

    def test_reopened_assessment_accepts_writes(self, storage):
        writer = make_engine(storage=storage)
        aid = populate(writer)

        reader = make_engine(storage=storage)
        answer(reader, aid, "R1", "Q2", 4)

        assert reader.head(aid).content.response_map()["Q2"] == 4
        assert reader.verify_log(aid)

    def test_unknown_assessment(self, engine):
        with pytest.raises(NotFoundError):
            engine.open_assessment("asm_missing")


class TestAppendOnly:

    def test_approval_appends_a_record(self, storage):
        engine = make_engine(storage=storage)
        aid = open_review(engine)
        head = head_of(engine, aid)

        engine.set_version_approval(aid, head, ApprovalStatus.APPROVED, LEAD)

        records = [r for r in storage.raw_versions(aid) if r["id"] == head]
        assert [r["approvalStatus"] for r in records] == ["draft", "approved"]
        assert storage.load_versions(aid)[0].approval_status is ApprovalStatus.APPROVED

    def test_logged_approval_survives_reopen(self, storage):
        writer = make_engine(storage=storage)
        aid = open_review(writer)
        head = head_of(writer, aid)
        writer.set_version_approval(aid, head, ApprovalStatus.APPROVED, LEAD)

        reader = make_engine(storage=storage)

        assert reader.get_version(aid, head).approval_status is ApprovalStatus.APPROVED
        assert [c.entry_hash for c in reader.changes(aid)] == [c.entry_hash for c in writer.changes(aid)]
        assert reader.changes(aid)[-1].target.version_id == head
        assert reader.workflow(aid) == writer.workflow(aid)
        assert reader.verify_log(aid)

    def test_write_failure_does_not_roll_back(self):
        engine = make_engine(storage=FailingChangeStorage())
        aid = open_review(engine)

        record = answer(engine, aid, "R1", "Q1", 3)

        assert record.consensus == 3
        assert engine.observability.get_metrics().total("storage_write_failures_total") > 0
        failures = [e for e in engine.observability.get_layer_log("storage") if e.get("outcome") == "failure"]
        assert failures


class TestTampering:

    def test_tampered_version_is_fatal(self, storage):
        aid = populate(make_engine(storage=storage))
        storage.raw_versions(aid)[0]["content"]["responses"]["Q5"] = 4

        reader = make_engine(storage=storage)
        with pytest.raises(ChecksumMismatchError) as exc_info:
            reader.open_assessment(aid)

        assert exc_info.value.code is ErrorCode.CHECKSUM_MISMATCH
        integrity = [e for e in reader.observability.get_layer_log("storage") if e.get("outcome") == "failure"]
        assert integrity

    def test_tampered_change_file_is_fatal(self, tmp_path):
        aid = populate(make_engine(storage=FileStorageBackend(str(tmp_path))))
        path = tmp_path / aid / "changes.jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[0])
        record["changedBy"] = "mallory"
        lines[0] = json.dumps(record)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        with pytest.raises(ChainIntegrityError):
            make_engine(storage=FileStorageBackend(str(tmp_path))).open_assessment(aid)


class TestStorageConfig:

    def test_memory_is_default(self):
        assert isinstance(StorageConfig().create_backend(), InMemoryStorageBackend)

    def test_file_backend_needs_directory(self):
        with pytest.raises(ValueError):
            StorageConfig(backend_type="file").create_backend()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            StorageConfig(backend_type="s3").create_backend()

    def test_file_backend_created(self, tmp_path):
        backend = StorageConfig(backend_type="file", storage_dir=str(tmp_path)).create_backend()

        assert isinstance(backend, FileStorageBackend)
        assert backend.storage_dir == str(tmp_path)


class TestForensicCli:

    def test_verify_intact_storage(self, tmp_path, capsys):
        aid = populate(make_engine(storage=FileStorageBackend(str(tmp_path))))

        code = forensic_main(["--storage-dir", str(tmp_path), "verify", aid])

        assert code == 0
        assert "[PASS] 1 assessment(s) verified" in capsys.readouterr().out

    def test_verify_detects_tampered_version(self, tmp_path, capsys):
        aid = populate(make_engine(storage=FileStorageBackend(str(tmp_path))))
        path = tmp_path / aid / "versions.jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[0])
        record["content"]["responses"]["Q5"] = 4
        lines[0] = json.dumps(record)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        code = forensic_main(["--storage-dir", str(tmp_path), "verify"])

        assert code == 1
        assert "checksum mismatch" in capsys.readouterr().out

    def test_verify_empty_storage(self, tmp_path, capsys):
        code = forensic_main(["--storage-dir", str(tmp_path), "verify"])

        assert code == 0
        assert "No assessments found" in capsys.readouterr().out

    def test_log_lists_every_change(self, tmp_path, capsys):
        engine = make_engine(storage=FileStorageBackend(str(tmp_path)))
        aid = populate(engine)

        forensic_main(["--storage-dir", str(tmp_path), "log", aid])

        rows = [line for line in capsys.readouterr().out.splitlines() if line.endswith("...")]
        assert len(rows) == len(engine.changes(aid))

    def test_versions_renders_dag(self, tmp_path, capsys):
        engine = make_engine(storage=FileStorageBackend(str(tmp_path)))
        aid = populate(engine)

        code = forensic_main(["--storage-dir", str(tmp_path), "versions", aid])

        out = capsys.readouterr().out
        assert code == 0
        assert "branch=x" in out
        assert "merge<-" in out

    def test_no_command(self, tmp_path):
        assert forensic_main(["--storage-dir", str(tmp_path)]) == 2

    def test_dag_has_one_line_per_version(self, storage):
        engine = make_engine(storage=storage)
        aid = populate(engine)

        lines = render_ascii_dag(storage.load_versions(aid))

        assert len(lines) == len(list(engine.history(aid)))
        assert lines[0].startswith("`-- v1 ")
