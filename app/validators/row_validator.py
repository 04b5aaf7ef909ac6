"""
app/validators/row_validator.py

Row-level validation and type parsing for survey ingestion.
"""

from __future__ import annotations

import math
from typing import Any, Mapping

from app.domain.survey import PERCENTILE_FIELDS, RowValidationError

# Survey vendors suppress small cells with asterisks or dashes.
SUPPRESSED_MARKERS: frozenset[str] = frozenset({"*", "**", "***", "-", "--", "n/a", "na", "null", "none", "nan"})

_NUMERIC_NOISE = str.maketrans("", "", "$,%  ")

MIN_SURVEY_YEAR = 1900
MAX_SURVEY_YEAR = 2100

TEXT_FIELDS: tuple[str, ...] = (
    "specialty",
    "provider_type",
    "region",
    "survey_source",
    "variable",
    "organization_id",
)


class SurveyRowValidator:
    """
    Validates and parses mapped canonical survey row values.
    """

    def is_completely_empty_row(self, row: Mapping[str, Any]) -> bool:
        """
        Return True when all values in the row are empty or whitespace.
        """

        return all(self._is_blank(value) for value in row.values())

    def validate_mapped_row(
        self,
        *,
        mapped_row: Mapping[str, str | None],
        row_number: int,
        survey_source: str,
        default_year: int | None = None,
    ) -> tuple[dict[str, Any] | None, list[RowValidationError]]:
        """
        Validate and parse one canonical mapped row.

        Returns parsed canonical values (taxonomy fields still raw) or the
        list of errors for the row.
        """

        errors: list[RowValidationError] = []
        parsed: dict[str, Any] = {}

        for column in TEXT_FIELDS:
            parsed[column] = self._parse_optional_string(mapped_row.get(column))

        for column in ("specialty", "variable"):
            if column in mapped_row and parsed[column] is None:
                errors.append(
                    RowValidationError(
                        row_number=row_number,
                        column=column,
                        message=f"{column} is required.",
                        value=mapped_row.get(column),
                    )
                )
        if parsed["survey_source"] is None:
            parsed["survey_source"] = survey_source

        year = self._parse_year(mapped_row.get("year"), row_number=row_number, errors=errors)
        parsed["year"] = year if year is not None else default_year

        for column in ("n_orgs", "n_incumbents"):
            parsed[column] = self._parse_count(
                mapped_row.get(column),
                row_number=row_number,
                column=column,
                errors=errors,
            )

        for column in (*PERCENTILE_FIELDS, "value"):
            parsed[column] = self.parse_number(
                mapped_row.get(column),
                row_number=row_number,
                column=column,
                errors=errors,
            )

        if parsed["p50"] is None and parsed["value"] is None and not errors:
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column="p50",
                    message="Row has neither a median nor an individual value (suppressed or blank).",
                    value=mapped_row.get("p50"),
                )
            )

        self._check_percentile_order(parsed, row_number=row_number, errors=errors)

        if errors:
            return None, errors
        return parsed, []

    def parse_number(
        self,
        value: str | None,
        *,
        row_number: int,
        column: str,
        errors: list[RowValidationError],
    ) -> float | None:
        """
        Parse a currency or count cell; suppressed and blank cells are None.
        """

        if self._is_blank(value) or self._is_suppressed(value):
            return None

        cleaned = str(value).translate(_NUMERIC_NOISE)
        negative = cleaned.startswith("(") and cleaned.endswith(")")
        if negative:
            cleaned = cleaned[1:-1]
        try:
            number = float(cleaned)
        except ValueError:
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column=column,
                    message=f"{column} must be numeric.",
                    value=value,
                )
            )
            return None
        if not math.isfinite(number):
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column=column,
                    message=f"{column} must be a finite number.",
                    value=value,
                )
            )
            return None
        return -number if negative else number

    def _parse_count(
        self,
        value: str | None,
        *,
        row_number: int,
        column: str,
        errors: list[RowValidationError],
    ) -> int | None:
        number = self.parse_number(value, row_number=row_number, column=column, errors=errors)
        if number is None:
            return None
        if number < 0 or not float(number).is_integer():
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column=column,
                    message=f"{column} must be a non-negative whole number.",
                    value=value,
                )
            )
            return None
        return int(number)

    def _parse_year(
        self,
        value: str | None,
        *,
        row_number: int,
        errors: list[RowValidationError],
    ) -> int | None:
        if self._is_blank(value):
            return None
        try:
            year = int(str(value).strip())
        except ValueError:
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column="year",
                    message="year must be a four-digit integer.",
                    value=value,
                )
            )
            return None
        if not MIN_SURVEY_YEAR <= year <= MAX_SURVEY_YEAR:
            errors.append(
                RowValidationError(
                    row_number=row_number,
                    column="year",
                    message=f"year must be between {MIN_SURVEY_YEAR} and {MAX_SURVEY_YEAR}.",
                    value=value,
                )
            )
            return None
        return year

    @staticmethod
    def _check_percentile_order(
        parsed: Mapping[str, Any],
        *,
        row_number: int,
        errors: list[RowValidationError],
    ) -> None:
        values = [parsed.get(name) for name in PERCENTILE_FIELDS]
        if not all(item is not None and item != 0 for item in values):
            return
        for (low_name, low), (high_name, high) in zip(
            zip(PERCENTILE_FIELDS, values),
            zip(PERCENTILE_FIELDS[1:], values[1:]),
        ):
            if low > high:
                errors.append(
                    RowValidationError(
                        row_number=row_number,
                        column=high_name,
                        message=f"{high_name} must be >= {low_name}.",
                        value=str(high),
                    )
                )

    @staticmethod
    def _parse_optional_string(value: str | None) -> str | None:
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped if stripped else None

    @staticmethod
    def _is_suppressed(value: Any) -> bool:
        return str(value).strip().lower() in SUPPRESSED_MARKERS

    @staticmethod
    def _is_blank(value: Any) -> bool:
        return value is None or (isinstance(value, str) and not value.strip())
