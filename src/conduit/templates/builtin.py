"""Built-in pipeline templates.

Every built-in runs the standard seven-stage CI/CD shape and differs only in
its parameter schema and build blueprint. ``builtin_catalog()`` returns a
fresh catalog with all of them published.
"""

from __future__ import annotations

from conduit.templates.catalog import TemplateCatalog
from conduit.templates.models import ParameterSpec, ParameterType, PipelineTemplate

STANDARD_STAGES = (
    "Source Checkout",
    "Build",
    "Test",
    "Security Scan",
    "Package",
    "Deploy to Dev",
    "Verify Deployment",
)

_BRANCH = ParameterSpec(type=ParameterType.STRING, default="main", description="Branch to build")
_RUN_TESTS = ParameterSpec(type=ParameterType.BOOLEAN, default=True, description="Run the Test stage")


NODEJS_BASIC = PipelineTemplate(
    id="nodejs-basic",
    name="Node.js Basic",
    pipeline_type="full_cicd",
    provider_hint=None,
    description="Install, build, test and package a Node.js service",
    parameters={
        "language": ParameterSpec(
            type=ParameterType.STRING,
            required=True,
            choices=("javascript", "typescript"),
            description="Source language",
        ),
        "branch": _BRANCH,
        "node_version": ParameterSpec(type=ParameterType.STRING, default="20"),
        "run_tests": _RUN_TESTS,
    },
    stages=STANDARD_STAGES,
    config={
        "runtime": "node:${node_version}",
        "language": "${language}",
        "checkout": {"ref": "${branch}"},
        "build": {"commands": ["npm ci", "npm run build"]},
        "test": {"enabled": "${run_tests}", "commands": ["npm test"]},
    },
    tags=("nodejs", "javascript"),
)

JAVA_MAVEN = PipelineTemplate(
    id="java-maven",
    name="Java Maven",
    pipeline_type="full_cicd",
    description="Maven build with unit tests and artifact packaging",
    parameters={
        "java_version": ParameterSpec(
            type=ParameterType.STRING, default="17", choices=("11", "17", "21")
        ),
        "branch": _BRANCH,
        "goals": ParameterSpec(type=ParameterType.STRING, default="clean package"),
        "run_tests": _RUN_TESTS,
    },
    stages=STANDARD_STAGES,
    config={
        "runtime": "maven:3-eclipse-temurin-${java_version}",
        "checkout": {"ref": "${branch}"},
        "build": {"commands": ["mvn -B ${goals}"]},
        "test": {"enabled": "${run_tests}", "commands": ["mvn -B test"]},
    },
    tags=("java", "maven"),
)

PYTHON_BASIC = PipelineTemplate(
    id="python-basic",
    name="Python Basic",
    pipeline_type="full_cicd",
    description="Install, lint, test and build a Python package",
    parameters={
        "python_version": ParameterSpec(type=ParameterType.STRING, default="3.12"),
        "branch": _BRANCH,
        "test_command": ParameterSpec(type=ParameterType.STRING, default="pytest"),
        "run_tests": _RUN_TESTS,
    },
    stages=STANDARD_STAGES,
    config={
        "runtime": "python:${python_version}",
        "checkout": {"ref": "${branch}"},
        "build": {"commands": ["pip install -e .", "python -m build"]},
        "test": {"enabled": "${run_tests}", "commands": ["${test_command}"]},
    },
    tags=("python",),
)

DOCKER_BUILD = PipelineTemplate(
    id="docker-build",
    name="Docker Build",
    pipeline_type="build_only",
    description="Build and push a container image",
    parameters={
        "image": ParameterSpec(type=ParameterType.STRING, required=True, description="Image name"),
        "tag": ParameterSpec(type=ParameterType.STRING, default="latest"),
        "dockerfile": ParameterSpec(type=ParameterType.STRING, default="Dockerfile"),
        "branch": _BRANCH,
    },
    stages=("Source Checkout", "Build", "Security Scan", "Package"),
    config={
        "checkout": {"ref": "${branch}"},
        "build": {"dockerfile": "${dockerfile}", "image": "${image}:${tag}"},
        "push": {"image": "${image}:${tag}"},
    },
    tags=("docker", "container"),
)

BUILTIN_TEMPLATES: tuple[PipelineTemplate, ...] = (
    NODEJS_BASIC,
    JAVA_MAVEN,
    PYTHON_BASIC,
    DOCKER_BUILD,
)


def builtin_catalog() -> TemplateCatalog:
    """A new catalog with every built-in template published."""
    return TemplateCatalog(BUILTIN_TEMPLATES)
