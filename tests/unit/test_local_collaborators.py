"""Tests for the file-backed collaborators used by the CLI."""

import json
from datetime import timedelta

import pytest

from crm_automation.actions.base import ActionContext
from crm_automation.collaborators.local import Outbox, RecordFile, build_local_collaborators
from crm_automation.core.config import EngineConfig
from crm_automation.core.engine import WorkflowEngine
from crm_automation.core.enrollment import EnrollmentStatus
from crm_automation.core.errors import PermanentDispatchError
from tests.unit.workflow_fixtures import nurture_workflow, save_active


def _context(subject_id="contact-1", key="enr-1:0", workspace_id="default"):
    return ActionContext(
        workspace_id=workspace_id,
        workflow_id="wf",
        enrollment_id="enr-1",
        subject_id=subject_id,
        step_id="step",
        idempotency_key=key,
    )


@pytest.fixture
def records_path(tmp_path):
    path = tmp_path / "records.json"
    path.write_text(json.dumps([
        {"id": "contact-1", "first_name": "Ada", "email": "ada@example.com", "tags": ["lead"]},
    ]))
    return path


@pytest.fixture
def collaborators(records_path):
    return build_local_collaborators(records_path)


def _stored(records_path):
    return json.loads(records_path.read_text())


class TestRecordFile:
    def test_list_document_is_the_default_workspace(self, records_path):
        records = RecordFile(records_path)
        assert records.get("default", "contact-1")["first_name"] == "Ada"
        assert records.get("other", "contact-1") is None

    def test_mapping_document(self, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps({"acme": [{"id": "c-9"}]}))
        assert RecordFile(path).records("acme") == [{"id": "c-9"}]

    def test_missing_file_has_no_records(self, tmp_path):
        assert RecordFile(tmp_path / "none.json").records("default") == []

    def test_mutating_unknown_record_is_permanent(self, records_path):
        with pytest.raises(PermanentDispatchError):
            RecordFile(records_path).mutate("default", "ghost", lambda record: None)


class TestLocalCollaborators:
    def test_tags_are_added_once_and_removed(self, collaborators, records_path):
        assert collaborators.tags.add_tags(_context(), ["vip", "lead"]) == {"added": ["vip"]}
        assert _stored(records_path)["default"][0]["tags"] == ["lead", "vip"]

        assert collaborators.tags.remove_tags(_context(), ["lead"]) == {"removed": ["lead"]}
        assert _stored(records_path)["default"][0]["tags"] == ["vip"]

    def test_field_update_and_custom_fields(self, collaborators, records_path):
        collaborators.fields.update_field(_context(), "lifecycle_stage", "customer")
        collaborators.fields.update_field(_context(), "custom:plan", "Pro")

        record = _stored(records_path)["default"][0]
        assert record["lifecycle_stage"] == "customer"
        assert record["custom_fields"] == {"plan": "Pro"}

    def test_created_tasks_are_stored_beside_records(self, collaborators, records_path):
        result = collaborators.creator.create_task(_context(), {"title": "Call Ada"})

        tasks = _stored(records_path)["default:tasks"]
        assert tasks[0]["id"] == result["task_id"]
        assert tasks[0]["title"] == "Call Ada"
        assert tasks[0]["contact_id"] == "contact-1"


class TestOutbox:
    def test_replayed_delivery_is_suppressed(self, tmp_path):
        outbox = Outbox(tmp_path / "outbox.jsonl")

        first = outbox.deliver(_context(), "email", {"to": "ada@example.com"})
        replay = outbox.deliver(_context(), "email", {"to": "ada@example.com"})
        next_step = outbox.deliver(_context(key="enr-1:2"), "email", {"to": "ada@example.com"})

        assert "message_id" in first
        assert replay["duplicate"] is True
        assert "message_id" in next_step
        assert len((tmp_path / "outbox.jsonl").read_text().splitlines()) == 2

    def test_kinds_are_keyed_separately(self, tmp_path):
        outbox = Outbox(tmp_path / "outbox.jsonl")
        outbox.deliver(_context(), "email", {})
        assert "message_id" in outbox.deliver(_context(), "sms", {})


class TestEngineWithLocalCollaborators:
    def test_nurture_flow_writes_outbox(self, tmp_path, records_path, collaborators, now):
        engine = WorkflowEngine(EngineConfig(workspace=tmp_path), collaborators)
        try:
            save_active(engine, nurture_workflow())
            enrollment = engine.enroll("wf-nurture", "contact-1", now=now).enrollment
            engine.tick(now + timedelta(days=1))
            done = engine.get_enrollment(enrollment.id)
        finally:
            engine.close()

        assert done.status == EnrollmentStatus.COMPLETED
        assert "nurture" in _stored(records_path)["default"][0]["tags"]
        lines = (tmp_path / "outbox.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["subject"] == "Hi Ada"
