"""
Tests for pipeline definition loading.
"""

import json
import pickle

import pytest
import yaml

from provisioncore.dependencies import DependencyInstaller, DependencyStep
from provisioncore.errors import ConfigurationError
from provisioncore.exit_codes import ToolKind
from provisioncore.pipeline_file import build_steps, load_pipeline
from provisioncore.steps import CommandStep


PIPELINE = {
    "steps": [
        {
            "name": "InstallTools",
            "critical": True,
            "dependencies": [
                {
                    "id": "Microsoft.AppInstaller",
                    "display_name": "App Installer",
                    "sources": [
                        {"source": "winget", "invocation": ["winget", "install", "--id", "Microsoft.AppInstaller"]},
                        {"source": "msstore", "invocation": ["winget", "install", "--id", "9NBLGGH4NNS1"]},
                    ],
                    "fallback_installer_uri": "https://aka.ms/getwinget",
                    "retry": {"max_attempts": 3, "delay_seconds": 10, "requires_network": True},
                }
            ],
        },
        {
            "name": "InstallGit",
            "depends_on": ["InstallTools"],
            "command": ["winget", "install", "--id", "Git.Git", "-e"],
            "exit_code_table": "package_manager",
            "app_name": "Git",
            "version": "2.44.0",
            "timeout_seconds": 1800,
            "retry": {"max_attempts": 2, "exponential_backoff": True},
        },
    ]
}


@pytest.fixture
def pipeline_path(tmp_path):
    path = tmp_path / "provision.yaml"
    path.write_text(yaml.safe_dump(PIPELINE), encoding="utf-8")
    return path


class TestLoadPipeline:
    def test_load_yaml(self, pipeline_path):
        spec = load_pipeline(pipeline_path)
        assert [s.name for s in spec.steps] == ["InstallTools", "InstallGit"]
        assert spec.steps[1].exit_code_table == ToolKind.PACKAGE_MANAGER_TOOL

    def test_load_json(self, tmp_path):
        path = tmp_path / "provision.json"
        path.write_text(json.dumps(PIPELINE), encoding="utf-8")
        assert len(load_pipeline(path).steps) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_pipeline(tmp_path / "nope.yaml")

    def test_unparsable(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("steps: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_pipeline(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_pipeline(path)

    @pytest.mark.parametrize(
        "step",
        [
            {"name": "Both", "command": ["x"], "dependencies": []},
            {"name": "Neither"},
            {"name": "Empty", "command": []},
            {"name": "Typo", "command": ["x"], "critcal": True},
            {"name": "BadRetry", "command": ["x"], "retry": {"max_attempts": 0}},
        ],
    )
    def test_invalid_steps(self, tmp_path, step):
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.safe_dump({"steps": [step]}), encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid pipeline"):
            load_pipeline(path)

    def test_empty_pipeline_rejected(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("steps: []\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_pipeline(path)


class TestBuildSteps:
    def test_builds_typed_steps(self, pipeline_path):
        installer = DependencyInstaller()
        tools, git = build_steps(load_pipeline(pipeline_path), installer=installer)

        assert isinstance(tools, DependencyStep)
        assert tools.critical
        assert tools.installer is installer
        [dep] = tools.dependencies
        assert dep.display_name == "App Installer"
        assert [s.source for s in dep.candidate_sources] == ["winget", "msstore"]
        assert dep.retry_policy.max_attempts == 3
        assert dep.retry_policy.requires_network
        assert dep.detect is None

        assert isinstance(git, CommandStep)
        assert git.argv == ("winget", "install", "--id", "Git.Git", "-e")
        assert git.depends_on == frozenset({"InstallTools"})
        assert git.exit_code_table == ToolKind.PACKAGE_MANAGER_TOOL
        assert git.app_name == "Git"
        assert git.version == "2.44.0"
        assert git.timeout_seconds == 1800
        assert git.retry_policy.exponential_backoff

    def test_step_without_retry_runs_once(self, tmp_path):
        path = tmp_path / "p.yaml"
        path.write_text(yaml.safe_dump({"steps": [{"name": "A", "command": ["x"]}]}), encoding="utf-8")
        [step] = build_steps(load_pipeline(path))
        assert step.retry_policy is None
        assert step.exit_code_table == ToolKind.INSTALLER_PACKAGE

    def test_detect_becomes_probe(self, tmp_path):
        path = tmp_path / "p.yaml"
        data = {"steps": [{"name": "A", "dependencies": [{"id": "Git", "detect": ["git", "--version"]}]}]}
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        [step] = build_steps(load_pipeline(path))
        assert callable(step.dependencies[0].detect)

    def test_built_steps_pickle(self, tmp_path):
        """Steps from a pipeline file can be sent to a spawned step process."""
        path = tmp_path / "p.yaml"
        data = {"steps": [{"name": "A", "dependencies": [{"id": "Git", "detect": ["git", "--version"]}]}]}
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        [step] = build_steps(load_pipeline(path))

        restored = pickle.loads(pickle.dumps(step))

        assert restored.name == "A"
        assert restored.dependencies[0].detect.argv == ("git", "--version")
