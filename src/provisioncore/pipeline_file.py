"""
Pipeline definition files.

A pipeline is described in YAML (or JSON) and validated with Pydantic before
any step runs:

    steps:
      - name: InstallTools
        critical: true
        dependencies:
          - id: Microsoft.AppInstaller
            display_name: App Installer
            detect: ["winget", "--version"]
            sources:
              - source: msstore
                invocation: ["winget", "install", "--id", "9NBLGGH4NNS1", "--source", "msstore"]
            fallback_installer_uri: https://aka.ms/getwinget
            retry: {max_attempts: 3, delay_seconds: 10, exponential_backoff: true, requires_network: true}
      - name: InstallGit
        depends_on: [InstallTools]
        command: ["winget", "install", "--id", "Git.Git", "-e", "--silent"]
        exit_code_table: package_manager
        app_name: Git
        version: "2.44.0"
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from provisioncore.dependencies import (
    CandidateSource,
    Dependency,
    DependencyInstaller,
    DependencyStep,
    command_probe,
)
from provisioncore.errors import ConfigurationError
from provisioncore.exit_codes import ToolKind
from provisioncore.retry import RetryPolicy
from provisioncore.steps import CommandStep, DeploymentStep

__all__ = ["PipelineSpec", "StepSpec", "DependencySpec", "load_pipeline", "build_steps"]


class RetrySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1)
    delay_seconds: int = Field(default=0, ge=0)
    exponential_backoff: bool = False
    requires_network: bool = False

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            delay_seconds=self.delay_seconds,
            exponential_backoff=self.exponential_backoff,
            requires_network=self.requires_network,
        )


class SourceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    invocation: List[str] = Field(min_length=1)


class DependencySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: Optional[str] = None
    detect: Optional[List[str]] = None
    sources: List[SourceSpec] = Field(default_factory=list)
    fallback_installer_uri: Optional[str] = None
    fallback_installer_args: List[str] = Field(default_factory=list)
    version: Optional[str] = None
    source_tool_kind: ToolKind = ToolKind.PACKAGE_MANAGER_TOOL
    retry: Optional[RetrySpec] = None

    def to_dependency(self) -> Dependency:
        return Dependency(
            id=self.id,
            display_name=self.display_name,
            candidate_sources=[CandidateSource(s.source, s.invocation) for s in self.sources],
            fallback_installer_uri=self.fallback_installer_uri,
            fallback_installer_args=self.fallback_installer_args,
            detect=command_probe(self.detect) if self.detect else None,
            version=self.version,
            retry_policy=self.retry.to_policy() if self.retry else RetryPolicy(),
            source_tool_kind=self.source_tool_kind,
        )


class StepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    command: Optional[List[str]] = None
    dependencies: Optional[List[DependencySpec]] = None
    critical: bool = False
    depends_on: List[str] = Field(default_factory=list)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    exit_code_table: ToolKind = ToolKind.INSTALLER_PACKAGE
    app_name: Optional[str] = None
    version: Optional[str] = None
    env: dict = Field(default_factory=dict)
    cwd: Optional[str] = None
    retry: Optional[RetrySpec] = None

    @model_validator(mode="after")
    def _one_action(self) -> "StepSpec":
        if (self.command is None) == (self.dependencies is None):
            raise ValueError(f"step '{self.name}' needs exactly one of 'command' or 'dependencies'")
        if self.command is not None and not self.command:
            raise ValueError(f"step '{self.name}' has an empty command")
        return self


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    steps: List[StepSpec] = Field(min_length=1)


def load_pipeline(path: Union[str, Path]) -> PipelineSpec:
    """
    Read and validate a pipeline file (.yaml, .yml or .json).

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read pipeline file {p}: {e}") from e

    try:
        if p.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot parse pipeline file {p}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Pipeline file {p} must contain a mapping, got {type(data).__name__}")

    try:
        return PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline file {p}: {e}") from e


def build_steps(
    spec: PipelineSpec,
    installer: Optional[DependencyInstaller] = None,
) -> List[DeploymentStep]:
    """Turn a validated pipeline definition into executable steps."""
    steps: List[DeploymentStep] = []
    for s in spec.steps:
        common = dict(
            name=s.name,
            critical=s.critical,
            depends_on=frozenset(s.depends_on),
            retry_policy=s.retry.to_policy() if s.retry else None,
            timeout_seconds=s.timeout_seconds,
            exit_code_table=s.exit_code_table,
            app_name=s.app_name,
        )
        if s.command is not None:
            steps.append(
                CommandStep(
                    argv=tuple(s.command),
                    env={str(k): str(v) for k, v in s.env.items()},
                    cwd=s.cwd,
                    version=s.version,
                    **common,
                )
            )
        else:
            steps.append(
                DependencyStep(
                    dependencies=[d.to_dependency() for d in s.dependencies or []],
                    installer=installer,
                    **common,
                )
            )
    return steps
