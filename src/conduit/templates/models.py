"""Template data model.

A :class:`PipelineTemplate` is an immutable, versioned blueprint: parameter
schema, ordered stage names and a config blueprint whose string values may
contain ``${name}`` placeholders. Resolving one yields a
:class:`ResolvedPipeline`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

DEFAULT_ENVIRONMENTS = ("development", "staging", "production")


class ParameterType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    MAPPING = "mapping"

    def accepts(self, value: Any) -> bool:
        if self is ParameterType.STRING:
            return isinstance(value, str)
        if self is ParameterType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        if self is ParameterType.NUMBER:
            return isinstance(value, int | float) and not isinstance(value, bool)
        if self is ParameterType.BOOLEAN:
            return isinstance(value, bool)
        if self is ParameterType.LIST:
            return isinstance(value, list | tuple)
        return isinstance(value, Mapping)


@dataclass(frozen=True)
class ParameterSpec:
    """Declared schema for one template parameter."""

    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    choices: tuple[Any, ...] | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type.value, "required": self.required}
        if self.default is not None:
            d["default"] = self.default
        if self.choices is not None:
            d["choices"] = list(self.choices)
        if self.description:
            d["description"] = self.description
        return d


@dataclass(frozen=True)
class PipelineTemplate:
    """Immutable, versioned pipeline blueprint.

    ``parameters`` and ``config`` are exposed as read-only mappings; a new
    version must be published under a new ``id``.
    """

    id: str
    name: str
    version: str = "1.0.0"
    pipeline_type: str = "full_cicd"
    provider_hint: str | None = None
    parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)
    stages: tuple[str, ...] = ()
    config: Mapping[str, Any] = field(default_factory=dict)
    environments: tuple[str, ...] = DEFAULT_ENVIRONMENTS
    description: str = ""
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.id or not self.name:
            raise ValueError("template id and name are required")
        if not self.stages:
            raise ValueError(f"template '{self.id}' must declare at least one stage")
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "environments", tuple(self.environments))
        object.__setattr__(self, "tags", tuple(self.tags))

    @property
    def version_key(self) -> tuple[int, ...]:
        """Numeric sort key for ``version`` (non-numeric parts sort as 0)."""
        parts = []
        for part in self.version.split("."):
            parts.append(int(part) if part.isdigit() else 0)
        return tuple(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "pipeline_type": self.pipeline_type,
            "provider_hint": self.provider_hint,
            "parameters": {k: v.to_dict() for k, v in self.parameters.items()},
            "stages": list(self.stages),
            "config": dict(self.config),
            "environments": list(self.environments),
            "description": self.description,
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class ResolvedPipeline:
    """Concrete pipeline configuration produced by the resolver."""

    template_id: str
    pipeline_type: str
    provider_hint: str | None
    stages: tuple[str, ...]
    config: dict[str, Any]
    parameters: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "pipeline_type": self.pipeline_type,
            "provider_hint": self.provider_hint,
            "stages": list(self.stages),
            "config": self.config,
            "parameters": self.parameters,
        }
