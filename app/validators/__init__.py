"""
app/validators package marker.
"""

from app.validators.mapping_validator import IncompleteMappingError, MappingErrorDetail, MappingValidator
from app.validators.row_validator import SurveyRowValidator

__all__ = [
    "IncompleteMappingError",
    "MappingErrorDetail",
    "MappingValidator",
    "SurveyRowValidator",
]
