"""Tests for TemplateCatalog, the template model and the built-in set."""

from __future__ import annotations

import pytest

from conduit.core.errors import TemplateNotFound, ValidationError
from conduit.templates.builtin import BUILTIN_TEMPLATES, builtin_catalog
from conduit.templates.catalog import TemplateCatalog
from conduit.templates.models import PipelineTemplate


def _template(template_id: str = "t1", name: str = "T", version: str = "1.0.0") -> PipelineTemplate:
    return PipelineTemplate(id=template_id, name=name, version=version, stages=("Build",))


class TestCatalog:
    def test_publish_and_get(self):
        catalog = TemplateCatalog()
        template = catalog.publish(_template())
        assert catalog.get("t1") is template
        assert "t1" in catalog
        assert len(catalog) == 1

    def test_duplicate_id_rejected(self):
        catalog = TemplateCatalog([_template()])
        with pytest.raises(ValidationError, match="already published"):
            catalog.publish(_template(version="2.0.0"))

    def test_unknown(self):
        with pytest.raises(TemplateNotFound):
            TemplateCatalog().get("nope")

    def test_disable_and_enable(self):
        catalog = TemplateCatalog([_template("a"), _template("b")])
        catalog.disable("a")
        assert not catalog.is_enabled("a")
        assert [t.id for t in catalog.list_templates()] == ["b"]
        assert [t.id for t in catalog.list_templates(include_disabled=True)] == ["a", "b"]
        assert catalog.get("a", include_disabled=True).id == "a"

        catalog.enable("a")
        assert catalog.is_enabled("a")

    def test_toggle_unknown_raises(self):
        with pytest.raises(TemplateNotFound):
            TemplateCatalog().disable("ghost")

    def test_latest_by_numeric_version(self):
        catalog = TemplateCatalog(
            [
                _template("svc-v1", "Service", "1.9.0"),
                _template("svc-v2", "Service", "1.10.0"),
                _template("other", "Other", "9.0.0"),
            ]
        )
        assert catalog.latest("Service").id == "svc-v2"
        catalog.disable("svc-v2")
        assert catalog.latest("Service").id == "svc-v1"
        with pytest.raises(TemplateNotFound):
            catalog.latest("Missing")

    def test_usage_counts(self):
        catalog = TemplateCatalog([_template("a"), _template("b")])
        assert catalog.record_usage("a") == 1
        assert catalog.record_usage("a") == 2
        assert catalog.usage("a") == 2
        assert catalog.usage_counts() == {"a": 2, "b": 0}


class TestTemplateModel:
    def test_immutable_mappings(self):
        template = PipelineTemplate(id="t", name="T", stages=("Build",), config={"k": "v"})
        with pytest.raises(TypeError):
            template.config["k"] = "changed"

    def test_requires_stages(self):
        with pytest.raises(ValueError, match="at least one stage"):
            PipelineTemplate(id="t", name="T")

    def test_to_dict(self):
        data = _template().to_dict()
        assert data["stages"] == ["Build"]
        assert data["environments"] == ["development", "staging", "production"]


class TestBuiltins:
    def test_ids(self):
        assert [t.id for t in BUILTIN_TEMPLATES] == [
            "nodejs-basic",
            "java-maven",
            "python-basic",
            "docker-build",
        ]

    def test_fresh_catalog_each_call(self):
        first = builtin_catalog()
        first.disable("java-maven")
        assert builtin_catalog().is_enabled("java-maven")

    def test_nodejs_requires_language(self):
        spec = builtin_catalog().get("nodejs-basic").parameters["language"]
        assert spec.required is True
        assert spec.choices == ("javascript", "typescript")
