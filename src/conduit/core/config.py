"""Pydantic models for the orchestrator YAML file.

Provider registrations and extra pipeline templates are declared in one
YAML document and validated here before anything is built from them.

Usage::

    from conduit.core.config import load_config

    config = load_config("conduit.yaml")
    for provider in config.providers:
        ...

Example YAML::

    apiVersion: conduit.io/v1
    kind: Orchestrator
    providers:
      - name: jenkins-main
        type: stub
        capabilities: [full_cicd, build_only]
        max_concurrent: 4
        connection:
          url: https://jenkins.example.com
          api_token: s3cret
        options:
          stage_seconds: 2
      - name: gitlab-ci
        type: flaky
        capabilities: [full_cicd]
        enabled: false
    templates:
      - id: go-basic
        name: Go Basic
        pipeline_type: build_only
        stages: [Source Checkout, Build, Test]
        parameters:
          go_version: {type: string, default: "1.22"}
        config:
          runtime: golang:${go_version}

Manifesto:
    Operators describe which backends exist and which blueprints are
    offered; code never hard-codes either. Invalid files fail at load
    time with every problem pydantic found.

Tags:
    conduit, configuration, yaml, pydantic, providers, templates
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from conduit.templates.models import ParameterSpec, ParameterType, PipelineTemplate


def _unique(names: list[str], what: str) -> None:
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate {what}: {duplicates}")


class ProviderConfig(BaseModel):
    """One provider registration."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique registration name")
    type: str = Field(..., min_length=1, description="Adapter type in the factory table")
    capabilities: list[str] = Field(
        default_factory=list,
        description="Pipeline types; empty means whatever the adapter declares",
    )
    connection: dict[str, Any] = Field(default_factory=dict, description="Connection parameters")
    max_concurrent: int | None = Field(default=None, ge=1, description="In-flight cap, unlimited when unset")
    enabled: bool = True
    options: dict[str, Any] = Field(default_factory=dict, description="Adapter constructor options")
    metadata: dict[str, Any] = Field(default_factory=dict)


class TemplateParameterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    choices: list[Any] | None = None
    description: str = ""

    def to_spec(self) -> ParameterSpec:
        return ParameterSpec(
            type=self.type,
            required=self.required,
            default=self.default,
            choices=tuple(self.choices) if self.choices is not None else None,
            description=self.description,
        )


class TemplateConfig(BaseModel):
    """A pipeline template declared in YAML."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    pipeline_type: str = "full_cicd"
    provider_hint: str | None = None
    parameters: dict[str, TemplateParameterConfig] = Field(default_factory=dict)
    stages: list[str] = Field(..., min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    environments: list[str] = Field(default_factory=lambda: ["development", "staging", "production"])
    description: str = ""
    tags: list[str] = Field(default_factory=list)

    def to_template(self) -> PipelineTemplate:
        return PipelineTemplate(
            id=self.id,
            name=self.name,
            version=self.version,
            pipeline_type=self.pipeline_type,
            provider_hint=self.provider_hint,
            parameters={k: v.to_spec() for k, v in self.parameters.items()},
            stages=tuple(self.stages),
            config=self.config,
            environments=tuple(self.environments),
            description=self.description,
            tags=tuple(self.tags),
        )


class OrchestratorConfig(BaseModel):
    """Root model of the orchestrator YAML file."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["conduit.io/v1"] = "conduit.io/v1"
    kind: Literal["Orchestrator"] = "Orchestrator"
    providers: list[ProviderConfig] = Field(default_factory=list)
    templates: list[TemplateConfig] = Field(default_factory=list)
    include_builtin_templates: bool = True

    @field_validator("providers")
    @classmethod
    def validate_unique_providers(cls, v: list[ProviderConfig]) -> list[ProviderConfig]:
        _unique([p.name for p in v], "provider names")
        return v

    @field_validator("templates")
    @classmethod
    def validate_unique_templates(cls, v: list[TemplateConfig]) -> list[TemplateConfig]:
        _unique([t.id for t in v], "template ids")
        return v

    @classmethod
    def from_yaml(cls, yaml_content: str) -> OrchestratorConfig:
        """Parse and validate YAML content.

        Raises:
            ValueError: If the YAML is malformed or does not match the schema
                (``pydantic.ValidationError`` is a ``ValueError``).
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML: {e}") from e
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> OrchestratorConfig:
        content = Path(path).read_text(encoding="utf-8")
        return cls.from_yaml(content)


def load_config(path: str | Path | None) -> OrchestratorConfig:
    """Load *path*, or an empty config (built-in templates only) when None."""
    if path is None:
        return OrchestratorConfig()
    return OrchestratorConfig.from_yaml_file(path)
