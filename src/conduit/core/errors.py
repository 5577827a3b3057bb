"""
Structured error types for the Conduit orchestrator.

Every failure the orchestrator can surface is a ``ConduitError`` subclass
that carries a category, an explicit retry flag, and structured context.
Dispatch code decides whether to retry by reading ``retryable``; it never
parses messages.

Manifesto:
    - **Typed hierarchy:** request errors, template errors, provider errors
      and internal errors are distinct types
    - **Explicit retry semantics:** each error class declares whether it is
      retryable by default
    - **Rich context:** errors carry execution/provider identifiers for
      logging
    - **Caller-facing split:** only ``ProviderReportedFailure`` means the
      pipeline itself failed; everything else is infrastructure

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────────┐
        │                          ConduitError                             │
        │        (category, retryable, context, cause, to_dict())          │
        ├──────────────────────────────────────────────────────────────────┤
        │                                                                   │
        │  ValidationError        TemplateError          ProviderError      │
        │  (VALIDATION)           (TEMPLATE)             (PROVIDER)         │
        │                              │                      │             │
        │                         TemplateNotFound       ProviderRejected   │
        │                         ParameterValidation    ProviderUnreachable│
        │                                                ProviderTimeout    │
        │  NoCapableProvider      ExecutionNotFound      ProviderReported.. │
        │  (CAPABILITY)           (NOT_FOUND)            ProviderJobNotFound│
        │                                                                   │
        │  InternalError          InvalidTransitionError                    │
        │  (INTERNAL)             (STATE)                                   │
        │       │                                                           │
        │  StoreUnavailable                                                 │
        │  InvariantViolation                                               │
        └──────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = ProviderRejected("queue full", provider="jenkins")
    >>> err.retryable
    True
    >>> err.to_dict()["provider"]
    'jenkins'

Tags:
    error-handling, exception-hierarchy, retry-logic, conduit

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Coarse classification used for logging, alerting and API mapping."""

    VALIDATION = "VALIDATION"      # Bad request shape / parameters
    TEMPLATE = "TEMPLATE"          # Template lookup / parameter schema
    CAPABILITY = "CAPABILITY"      # No provider declares the capability
    PROVIDER = "PROVIDER"          # Provider rejected / unreachable / failed
    NOT_FOUND = "NOT_FOUND"        # Unknown execution or provider
    STATE = "STATE"                # Illegal state transition
    INTERNAL = "INTERNAL"          # Store unavailable, invariant violated


class ConduitError(Exception):
    """Base class for all orchestrator errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ConduitError:
        """Attach extra context (fluent)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# REQUEST ERRORS (never reach the queue)
# =============================================================================


class ValidationError(ConduitError):
    """Bad request shape or parameters, rejected before an execution exists."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None:
            self.context.setdefault("field", field)


class TemplateError(ConduitError):
    """Base for template resolution errors."""

    default_category = ErrorCategory.TEMPLATE
    default_retryable = False


class TemplateNotFound(TemplateError):
    """Template ID is unknown or the template is disabled."""

    def __init__(self, template_id: str, *, disabled: bool = False):
        reason = "is disabled" if disabled else "does not exist"
        super().__init__(
            f"Template '{template_id}' {reason}",
            context={"template_id": template_id, "disabled": disabled},
        )
        self.template_id = template_id
        self.disabled = disabled


class ParameterValidationError(TemplateError):
    """Supplied parameters violate the template's declared schema.

    ``problems`` lists every violation found, not just the first one.
    """

    def __init__(self, template_id: str, problems: list[str]):
        super().__init__(
            f"Invalid parameters for template '{template_id}': " + "; ".join(problems),
            context={"template_id": template_id, "problems": list(problems)},
        )
        self.template_id = template_id
        self.problems = list(problems)


class NoCapableProvider(ConduitError):
    """No registered provider (healthy or not) declares the capability.

    Surfaced as a warning on the queued execution rather than a failure,
    since a provider may be registered later.
    """

    default_category = ErrorCategory.CAPABILITY
    default_retryable = True

    def __init__(self, pipeline_type: str):
        super().__init__(
            f"No registered provider supports pipeline type '{pipeline_type}'",
            context={"pipeline_type": pipeline_type},
        )
        self.pipeline_type = pipeline_type


class ExecutionNotFound(ConduitError):
    """Execution ID is unknown to both the working set and the store."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, execution_id: str):
        super().__init__(
            f"Execution not found: {execution_id}",
            context={"execution_id": execution_id},
        )
        self.execution_id = execution_id


class ProviderNotFound(ConduitError):
    """Provider name is not registered."""

    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, name: str, available: list[str] | None = None):
        listing = ", ".join(available or []) or "(none)"
        super().__init__(
            f"No provider registered as '{name}'. Available: {listing}",
            context={"provider": name},
        )
        self.name = name


# =============================================================================
# PROVIDER ERRORS
# =============================================================================


class ProviderError(ConduitError):
    """Base for errors raised by (or about) a provider adapter."""

    default_category = ErrorCategory.PROVIDER
    default_retryable = False

    def __init__(self, message: str, *, provider: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.provider = provider
        if provider is not None:
            self.context.setdefault("provider", provider)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.provider is not None:
            result["provider"] = self.provider
        return result


class ProviderRejected(ProviderError):
    """Provider refused the job (capacity, invalid config). Dispatch-time."""

    default_retryable = True


class ProviderUnreachable(ProviderError):
    """Network failure or call timeout talking to the provider. Dispatch-time."""

    default_retryable = True


class ProviderTimeout(ProviderError):
    """Post-dispatch stall: the provider no longer knows the job. Terminal."""

    default_retryable = False


class ProviderReportedFailure(ProviderError):
    """Provider reported the pipeline failed. Terminal.

    The provider's diagnostic is kept verbatim in ``diagnostic``.
    """

    default_retryable = False

    def __init__(self, diagnostic: str, *, provider: str | None = None, **kwargs: Any):
        super().__init__(diagnostic, provider=provider, **kwargs)
        self.diagnostic = diagnostic


class ProviderJobNotFound(ProviderError):
    """Provider does not know the referenced job (unknown / absent)."""

    default_retryable = False

    def __init__(self, provider_ref: str, *, provider: str | None = None):
        super().__init__(
            f"Provider has no job '{provider_ref}'",
            provider=provider,
            context={"provider_ref": provider_ref},
        )
        self.provider_ref = provider_ref


# =============================================================================
# INTERNAL ERRORS
# =============================================================================


class InternalError(ConduitError):
    """Store unavailable or invariant violation. Always logged."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False


class StoreUnavailable(InternalError):
    """The execution store could not complete an operation."""

    default_retryable = True


class InvariantViolation(InternalError):
    """An internal invariant was about to be broken."""


class InvalidTransitionError(ConduitError):
    """Raised when an illegal state transition is attempted.

    Transition validation is strict. A legitimate transition that is blocked
    must be added to the transition table explicitly.
    """

    default_category = ErrorCategory.STATE

    def __init__(self, current: str, target: str, enum_name: str = "ExecutionState"):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid {enum_name} transition: {current} → {target}",
            context={"current": current, "target": target},
        )


__all__ = [
    "ErrorCategory",
    "ConduitError",
    "ValidationError",
    "TemplateError",
    "TemplateNotFound",
    "ParameterValidationError",
    "NoCapableProvider",
    "ExecutionNotFound",
    "ProviderNotFound",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnreachable",
    "ProviderTimeout",
    "ProviderReportedFailure",
    "ProviderJobNotFound",
    "InternalError",
    "StoreUnavailable",
    "InvariantViolation",
    "InvalidTransitionError",
]
