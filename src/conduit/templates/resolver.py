"""Template resolution: template + parameters → concrete pipeline config.

Resolution is a pure function of the template definition and the supplied
parameters. It runs on the request path before any execution exists, so it
performs no I/O and never touches the store or the queue.

Steps:
    1. Look up the template (``TemplateNotFound`` if unknown or disabled)
    2. Validate every declared parameter: required, type, choices
    3. Apply defaults for anything not supplied
    4. Substitute ``${name}`` placeholders throughout the config blueprint

All problems are collected before raising, so the caller sees every
violation in one ``ParameterValidationError``.

Example:
    >>> resolver = TemplateResolver(catalog)
    >>> resolved = resolver.resolve("nodejs-basic", {"language": "typescript"})
    >>> resolved.parameters["branch"]
    'main'
"""

from __future__ import annotations

from string import Template
from typing import Any

from conduit.core.errors import ParameterValidationError
from conduit.templates.catalog import TemplateCatalog
from conduit.templates.models import PipelineTemplate, ResolvedPipeline


def validate_parameters(template: PipelineTemplate, parameters: dict[str, Any]) -> list[str]:
    """Return every schema violation in *parameters* (empty list = valid)."""
    problems: list[str] = []
    for name, spec in template.parameters.items():
        if name not in parameters or parameters[name] is None:
            if spec.required and spec.default is None:
                problems.append(f"missing required parameter '{name}'")
            continue
        value = parameters[name]
        if not spec.type.accepts(value):
            problems.append(
                f"parameter '{name}' must be of type {spec.type.value}, got {type(value).__name__}"
            )
            continue
        if spec.choices is not None and value not in spec.choices:
            allowed = ", ".join(repr(c) for c in spec.choices)
            problems.append(f"parameter '{name}' must be one of {allowed}, got {value!r}")
    return problems


def substitute(value: Any, parameters: dict[str, Any]) -> Any:
    """Recursively replace ``${name}`` placeholders in strings.

    A string that is exactly one placeholder takes the parameter's value
    as-is (so integers stay integers); unknown placeholders are left intact.
    """
    if isinstance(value, str):
        if value.startswith("${") and value.endswith("}") and value[2:-1] in parameters:
            return parameters[value[2:-1]]
        return Template(value).safe_substitute(
            {k: str(v) for k, v in parameters.items()}
        )
    if isinstance(value, dict):
        return {k: substitute(v, parameters) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [substitute(v, parameters) for v in value]
    return value


class TemplateResolver:
    """Resolves catalog templates into :class:`ResolvedPipeline` values."""

    def __init__(self, catalog: TemplateCatalog) -> None:
        self.catalog = catalog

    def resolve(
        self,
        template_id: str,
        parameters: dict[str, Any] | None = None,
        *,
        environment: str | None = None,
    ) -> ResolvedPipeline:
        """Resolve *template_id* with *parameters*.

        Raises:
            TemplateNotFound: Unknown or disabled template.
            ParameterValidationError: Any schema violation (all listed), or
                an *environment* the template does not allow.
        """
        template = self.catalog.get(template_id)
        supplied = dict(parameters or {})

        problems = validate_parameters(template, supplied)
        if environment is not None and environment not in template.environments:
            allowed = ", ".join(template.environments)
            problems.append(f"environment '{environment}' is not allowed (allowed: {allowed})")
        if problems:
            raise ParameterValidationError(template_id, problems)

        effective = dict(supplied)
        for name, spec in template.parameters.items():
            if effective.get(name) is None and spec.default is not None:
                effective[name] = spec.default

        return ResolvedPipeline(
            template_id=template.id,
            pipeline_type=template.pipeline_type,
            provider_hint=template.provider_hint,
            stages=tuple(substitute(list(template.stages), effective)),
            config=substitute(dict(template.config), effective),
            parameters=effective,
        )
