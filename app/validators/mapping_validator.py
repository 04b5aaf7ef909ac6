"""
app/validators/mapping_validator.py

Validation for resolved survey column mappings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from app.domain.survey import FieldSpec
from app.errors import ValidationError


@dataclass(frozen=True)
class MappingErrorDetail:
    """
    Structured mapping error detail.
    """

    code: str
    message: str
    canonical_field: str | None = None
    source_column: str | None = None
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "canonical_field": self.canonical_field,
            "source_column": self.source_column,
            "context": self.context,
        }


class IncompleteMappingError(ValidationError):
    """
    Raised when survey columns cannot be mapped safely, most commonly because
    a required canonical field has no source header.
    """

    def __init__(self, *, message: str, errors: Sequence[MappingErrorDetail]) -> None:
        super().__init__(message, code="incomplete_mapping")
        self.errors = tuple(errors)

    @property
    def missing_fields(self) -> tuple[str, ...]:
        return tuple(
            error.canonical_field
            for error in self.errors
            if error.code == "required_field_unmapped" and error.canonical_field
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "errors": [error.to_dict() for error in self.errors],
        }


class MappingValidator:
    """
    Validates resolved canonical-to-source column mappings against a schema.
    """

    def __init__(self, *, schema: Sequence[FieldSpec]) -> None:
        self._schema = tuple(schema)
        self._canonical_set = {spec.name for spec in self._schema}

    def collect_errors(
        self,
        *,
        mapping: Mapping[str, str],
        source_headers: Sequence[str],
        pre_errors: Sequence[MappingErrorDetail] | None = None,
    ) -> list[MappingErrorDetail]:
        """
        Return every mapping problem without raising.
        """

        errors: list[MappingErrorDetail] = list(pre_errors or [])
        headers_set = set(source_headers)
        claimed_by: dict[str, str] = {}

        for canonical_field, source_column in mapping.items():
            # One header feeds exactly one canonical field.
            if source_column in claimed_by:
                errors.append(
                    MappingErrorDetail(
                        code="duplicate_source_column",
                        message="Source column is already mapped to another canonical field.",
                        canonical_field=canonical_field,
                        source_column=source_column,
                        context={"claimed_by": claimed_by[source_column]},
                    )
                )
            else:
                claimed_by[source_column] = canonical_field

            if canonical_field not in self._canonical_set:
                errors.append(
                    MappingErrorDetail(
                        code="invalid_canonical_field",
                        message="Unknown canonical field in mapping.",
                        canonical_field=canonical_field,
                        source_column=source_column,
                    )
                )
            if source_column not in headers_set:
                errors.append(
                    MappingErrorDetail(
                        code="unknown_source_column",
                        message="Mapped source column does not exist in survey headers.",
                        canonical_field=canonical_field,
                        source_column=source_column,
                    )
                )

        for spec in self._schema:
            if spec.required and spec.name not in mapping:
                errors.append(
                    MappingErrorDetail(
                        code="required_field_unmapped",
                        message="Required canonical field is not mapped.",
                        canonical_field=spec.name,
                        context={"source_headers": list(source_headers)},
                    )
                )
        return errors

    def validate(
        self,
        *,
        mapping: Mapping[str, str],
        source_headers: Sequence[str],
        pre_errors: Sequence[MappingErrorDetail] | None = None,
    ) -> None:
        """
        Validate mapping and raise structured errors if invalid.
        """

        errors = self.collect_errors(
            mapping=mapping,
            source_headers=source_headers,
            pre_errors=pre_errors,
        )
        if errors:
            missing_required = [
                error.canonical_field
                for error in errors
                if error.code == "required_field_unmapped" and error.canonical_field
            ]
            missing_csv = ", ".join(sorted(set(missing_required))) or "none"
            raise IncompleteMappingError(
                message=f"Column mapping validation failed. Missing required fields: {missing_csv}.",
                errors=errors,
            )
