"""Template catalog: publish, look up and toggle pipeline templates.

Templates are immutable once published; publishing an existing id raises.
Disabling a template hides it from resolution without deleting it. The
catalog also counts how many executions were created from each template.

::

    catalog = TemplateCatalog()
    catalog.publish(template)          → ValidationError on duplicate id
    catalog.get("nodejs-basic")        → TemplateNotFound if unknown/disabled
    catalog.latest("Node.js Basic")    → highest version of that name
    catalog.disable("nodejs-basic")
    catalog.record_usage("nodejs-basic")
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from conduit.core.errors import TemplateNotFound, ValidationError
from conduit.core.logging import get_logger
from conduit.templates.models import PipelineTemplate

logger = get_logger(__name__)


class TemplateCatalog:
    """In-memory catalog of published templates."""

    def __init__(self, templates: Iterable[PipelineTemplate] = ()) -> None:
        self._templates: dict[str, PipelineTemplate] = {}
        self._disabled: set[str] = set()
        self._usage: dict[str, int] = {}
        self._lock = threading.Lock()
        for template in templates:
            self.publish(template)

    def publish(self, template: PipelineTemplate) -> PipelineTemplate:
        with self._lock:
            if template.id in self._templates:
                raise ValidationError(
                    f"Template '{template.id}' is already published; publish a new version under a new id",
                    field="id",
                )
            self._templates[template.id] = template
            self._usage.setdefault(template.id, 0)
        logger.info("template_published", template_id=template.id, version=template.version)
        return template

    def get(self, template_id: str, *, include_disabled: bool = False) -> PipelineTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        if template_id in self._disabled and not include_disabled:
            raise TemplateNotFound(template_id, disabled=True)
        return template

    def latest(self, name: str) -> PipelineTemplate:
        """Highest-versioned enabled template with this *name*."""
        matches = [
            t for t in self._templates.values()
            if t.name == name and t.id not in self._disabled
        ]
        if not matches:
            raise TemplateNotFound(name)
        return max(matches, key=lambda t: t.version_key)

    def list_templates(self, *, include_disabled: bool = False) -> list[PipelineTemplate]:
        return [
            t for tid, t in sorted(self._templates.items())
            if include_disabled or tid not in self._disabled
        ]

    def is_enabled(self, template_id: str) -> bool:
        return template_id in self._templates and template_id not in self._disabled

    def enable(self, template_id: str) -> None:
        self.get(template_id, include_disabled=True)
        with self._lock:
            self._disabled.discard(template_id)
        logger.info("template_enabled", template_id=template_id)

    def disable(self, template_id: str) -> None:
        self.get(template_id, include_disabled=True)
        with self._lock:
            self._disabled.add(template_id)
        logger.info("template_disabled", template_id=template_id)

    def record_usage(self, template_id: str) -> int:
        with self._lock:
            self._usage[template_id] = self._usage.get(template_id, 0) + 1
            return self._usage[template_id]

    def usage(self, template_id: str) -> int:
        return self._usage.get(template_id, 0)

    def usage_counts(self) -> dict[str, int]:
        return dict(self._usage)

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates
