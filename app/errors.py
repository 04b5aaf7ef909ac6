"""
app/errors.py

Error taxonomy shared by the benchmark normalization engine.

Heuristic fallbacks (an unmatched header that is ignored, a taxonomy value
that is title-cased) are never raised as errors. They surface through the
coverage report instead.
"""

from __future__ import annotations

from typing import Any


class BenchmarkError(Exception):
    """Base exception for benchmark engine failures."""


class ValidationError(BenchmarkError, ValueError):
    """
    Raised when caller input cannot be processed safely.

    Covers malformed weight sets, empty header lists, invalid row values and
    (through ``IncompleteMappingError``) unresolved required columns.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "validation_error",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ConflictError(BenchmarkError):
    """
    Raised when a ``(survey_source, raw_value)`` pair already resolves to a
    different standardized name than the one being learned.
    """

    def __init__(
        self,
        *,
        entity_kind: str,
        survey_source: str,
        raw_value: str,
        existing_name: str,
        attempted_name: str,
    ) -> None:
        super().__init__(
            f"{entity_kind} value {raw_value!r} from source {survey_source!r} is already "
            f"mapped to {existing_name!r}; refusing to remap to {attempted_name!r}."
        )
        self.entity_kind = entity_kind
        self.survey_source = survey_source
        self.raw_value = raw_value
        self.existing_name = existing_name
        self.attempted_name = attempted_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": "mapping_conflict",
            "message": str(self),
            "entity_kind": self.entity_kind,
            "survey_source": self.survey_source,
            "raw_value": self.raw_value,
            "existing_name": self.existing_name,
            "attempted_name": self.attempted_name,
        }


class NotFoundError(BenchmarkError, LookupError):
    """Raised when a survey, template or mapping table does not exist."""

    def __init__(self, *, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} {identifier!r} was not found.")
        self.resource = resource
        self.identifier = identifier

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": "not_found",
            "message": str(self),
            "resource": self.resource,
            "identifier": self.identifier,
        }


class JobCancelledError(BenchmarkError):
    """
    Raised inside a running job when its cancellation token is set.

    This is a control-flow signal, not a failure: the job runner reports it
    as a ``cancelled`` outcome and discards any partial result.
    """
