"""Pipeline templates: catalog, pure resolver and built-ins."""

from conduit.templates.builtin import BUILTIN_TEMPLATES, builtin_catalog
from conduit.templates.catalog import TemplateCatalog
from conduit.templates.models import (
    ParameterSpec,
    ParameterType,
    PipelineTemplate,
    ResolvedPipeline,
)
from conduit.templates.resolver import TemplateResolver, substitute, validate_parameters

__all__ = [
    "BUILTIN_TEMPLATES",
    "builtin_catalog",
    "TemplateCatalog",
    "ParameterSpec",
    "ParameterType",
    "PipelineTemplate",
    "ResolvedPipeline",
    "TemplateResolver",
    "substitute",
    "validate_parameters",
]
