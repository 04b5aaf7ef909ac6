from __future__ import annotations

import unittest

from app.errors import ValidationError
from app.mappers.column_resolver import LONG_FORMAT_SCHEMA
from app.validators.mapping_validator import (
    IncompleteMappingError,
    MappingErrorDetail,
    MappingValidator,
)


class TestMappingValidator(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = MappingValidator(schema=LONG_FORMAT_SCHEMA)

    def test_raises_on_missing_required_fields(self) -> None:
        with self.assertRaises(IncompleteMappingError) as ctx:
            self.validator.validate(
                mapping={"specialty": "Specialty", "region": "Region"},
                source_headers=("Specialty", "Region"),
            )

        codes = {error.code for error in ctx.exception.errors}
        self.assertIn("required_field_unmapped", codes)
        self.assertEqual(set(ctx.exception.missing_fields), {"variable", "p50"})
        self.assertIn("p50", ctx.exception.message)
        self.assertIsInstance(ctx.exception, ValidationError)

    def test_raises_on_invalid_source_column(self) -> None:
        with self.assertRaises(IncompleteMappingError) as ctx:
            self.validator.validate(
                mapping={
                    "specialty": "Specialty",
                    "variable": "Metric",
                    "p50": "missing_column",
                },
                source_headers=("Specialty", "Metric", "Median"),
                pre_errors=[
                    MappingErrorDetail(
                        code="template_header_not_found",
                        message="saved template header missing",
                        canonical_field="p50",
                        source_column="missing_column",
                    )
                ],
            )

        codes = [error.code for error in ctx.exception.errors]
        self.assertIn("unknown_source_column", codes)
        self.assertIn("template_header_not_found", codes)
        self.assertEqual(ctx.exception.missing_fields, ())

    def test_unknown_canonical_field_is_reported(self) -> None:
        errors = self.validator.collect_errors(
            mapping={"specialty": "Specialty", "variable": "Metric", "p50": "Median", "bonus": "Bonus"},
            source_headers=("Specialty", "Metric", "Median", "Bonus"),
        )

        self.assertEqual([error.code for error in errors], ["invalid_canonical_field"])

    def test_header_mapped_twice_is_reported(self) -> None:
        errors = self.validator.collect_errors(
            mapping={"specialty": "Specialty", "variable": "Metric", "p50": "Median", "p75": "Median"},
            source_headers=("Specialty", "Metric", "Median"),
        )

        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].code, "duplicate_source_column")
        self.assertEqual(errors[0].canonical_field, "p75")
        self.assertEqual(errors[0].context, {"claimed_by": "p50"})

    def test_complete_mapping_passes(self) -> None:
        self.validator.validate(
            mapping={"specialty": "Specialty", "variable": "Metric", "p50": "Median"},
            source_headers=("Specialty", "Metric", "Median"),
        )

    def test_error_payload_is_serializable(self) -> None:
        with self.assertRaises(IncompleteMappingError) as ctx:
            self.validator.validate(mapping={}, source_headers=("Notes",))

        payload = ctx.exception.to_dict()
        self.assertEqual(payload["code"], "incomplete_mapping")
        self.assertEqual(
            {item["canonical_field"] for item in payload["errors"]},
            {"specialty", "variable", "p50"},
        )
        self.assertEqual(payload["errors"][0]["context"], {"source_headers": ["Notes"]})


if __name__ == "__main__":
    unittest.main()
