"""Tests for configuration and workflow file loading."""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from crm_automation.core.config import EngineConfig, load_config, load_workflow_file
from crm_automation.workflow.lifecycle import validate_for_activation

REPO_ROOT = Path(__file__).resolve().parents[2]


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")
        assert config.retry.max_attempts == 3
        assert config.workers.lease_ttl_seconds == 300

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "crm-automation.yaml"
        path.write_text(yaml.safe_dump({
            "retry": {"max_attempts": 5, "backoff_initial": 10},
            "workers": {"count": 2},
            "storage": {"root": "/var/lib/crm"},
        }))

        config = load_config(path)

        assert config.retry.max_attempts == 5
        assert config.retry.backoff_initial == 10
        assert config.workers.count == 2
        assert config.storage_root == Path("/var/lib/crm")

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CRM_STORAGE_ROOT", "/srv/crm")
        path = tmp_path / "crm-automation.yaml"
        path.write_text("storage:\n  root: \"${CRM_STORAGE_ROOT}\"\n")

        assert load_config(path).storage.root == Path("/srv/crm")

    def test_invalid_values_are_rejected(self, tmp_path):
        path = tmp_path / "crm-automation.yaml"
        path.write_text("workers:\n  count: 0\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CRM_AUTOMATION_RETRY__MAX_ATTEMPTS", "7")
        assert EngineConfig().retry.max_attempts == 7

    def test_relative_storage_root_follows_workspace(self, tmp_path):
        config = EngineConfig(workspace=tmp_path)
        assert config.storage_root == tmp_path / ".crm-automation"

    def test_shipped_config_loads(self):
        config = load_config(REPO_ROOT / "config" / "crm-automation.yaml")
        assert config.scheduler.batch_size > 0


class TestLoadWorkflowFile:
    def test_yaml_workflow(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(yaml.safe_dump({
            "id": "wf-yaml",
            "name": "From YAML",
            "trigger": {"type": "manual"},
            "steps": [{"id": "tag", "type": "add_tag", "config": {"tag_ids": ["a"]}}],
        }))

        workflow = load_workflow_file(path)
        assert workflow.id == "wf-yaml"
        assert workflow.entry_step_id == "tag"

    def test_json_workflow(self, tmp_path):
        path = tmp_path / "wf.json"
        path.write_text(json.dumps({"id": "wf-json", "name": "From JSON", "steps": []}))
        assert load_workflow_file(path).name == "From JSON"

    def test_non_mapping_is_rejected(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_workflow_file(path)

    def test_unknown_step_type_is_a_schema_error(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(yaml.safe_dump({
            "id": "wf-bad",
            "name": "Bad",
            "steps": [{"id": "x", "type": "teleport"}],
        }))
        with pytest.raises(ValidationError):
            load_workflow_file(path)

    def test_example_workflow_is_activatable(self):
        workflow = load_workflow_file(REPO_ROOT / "workflows" / "welcome-series.yaml")
        assert validate_for_activation(workflow) == []
