"""
app/services package marker.
"""

from app.services.aggregation_service import PercentileAggregationService, get_aggregation_service
from app.services.blending_service import BlendingService, get_blending_service
from app.services.coverage_service import MappingCoverageAnalyzer
from app.services.job_runner import BenchmarkJobRunner, CancellationToken, get_job_runner
from app.services.survey_ingestion_service import (
    SurveyIngestionService,
    SurveyPersistenceError,
    get_survey_ingestion_service,
)
from app.services.variable_discovery_service import (
    VariableDiscoveryService,
    get_variable_discovery_service,
)

__all__ = [
    "BenchmarkJobRunner",
    "BlendingService",
    "CancellationToken",
    "MappingCoverageAnalyzer",
    "PercentileAggregationService",
    "SurveyIngestionService",
    "SurveyPersistenceError",
    "VariableDiscoveryService",
    "get_aggregation_service",
    "get_blending_service",
    "get_job_runner",
    "get_survey_ingestion_service",
    "get_variable_discovery_service",
]
