"""
app/services/variable_discovery_service.py

Distinct variable discovery over a survey's normalized rows.

Results are cached per (survey_id, content_hash). The content hash is a
function of the row multiset, so re-uploading identical rows keeps the cache
warm while any mutation produces a new hash and forces exactly one rescan.
A scan walks the row store's forward-only batch cursor and never holds more
than one batch.
"""

from __future__ import annotations

import logging
import threading
from functools import lru_cache
from typing import Sequence

from app.config import get_benchmark_settings
from app.domain.survey import VariableIndexEntry
from app.errors import NotFoundError
from app.mappers.row_normalizer import detect_wide_columns
from app.mappers.taxonomy_normalizer import map_variable_name, to_snake_key
from app.repositories.base import RowStore, VariableIndexCache
from app.repositories.memory_store import InMemoryVariableIndexCache
from app.services.job_runner import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)


class VariableDiscoveryService:
    """
    Discovers the distinct ``variable`` values present in a survey.

    Parameters
    ----------
    cache:
        Variable index cache; defaults to a private in-memory cache.
    batch_size:
        Rows per cursor batch (cancellation is checked once per batch).
    """

    def __init__(
        self,
        *,
        cache: VariableIndexCache | None = None,
        batch_size: int = 1000,
    ) -> None:
        self._cache = cache if cache is not None else InMemoryVariableIndexCache()
        self._batch_size = max(1, batch_size)
        self._scan_lock = threading.Lock()
        self._scan_count = 0

    @property
    def scan_count(self) -> int:
        """Number of full row scans performed (cache misses)."""
        with self._scan_lock:
            return self._scan_count

    def discover_variables(
        self,
        survey_id: str,
        row_store: RowStore,
        *,
        cache: VariableIndexCache | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> frozenset[str]:
        """
        Return the distinct variables for ``survey_id``.

        Raises NotFoundError for an unknown survey and JobCancelledError when
        cancelled between batches; nothing is cached in that case. A survey
        with zero rows yields an empty set, which is cached like any other
        result.
        """

        if not row_store.has_survey(survey_id):
            raise NotFoundError(resource="survey", identifier=survey_id)

        index_cache = cache if cache is not None else self._cache
        content_hash = row_store.content_hash(survey_id)
        cached = index_cache.get(survey_id, content_hash)
        if cached is not None:
            logger.debug("Variable index hit survey=%s hash=%s", survey_id, content_hash[:12])
            return cached.variables

        variables: set[str] = set()
        batches = 0
        for batch in row_store.iter_row_batches(survey_id, self._batch_size):
            check_cancelled(cancel_token)
            variables.update(row.variable for row in batch if row.variable)
            batches += 1
        check_cancelled(cancel_token)

        with self._scan_lock:
            self._scan_count += 1

        result = frozenset(variables)
        index_cache.put(
            VariableIndexEntry(
                survey_id=survey_id,
                variables=result,
                content_hash=content_hash,
            )
        )
        logger.info(
            "Variable index rebuilt survey=%s batches=%d variables=%d",
            survey_id,
            batches,
            len(result),
        )
        return result

    @staticmethod
    def discover_wide_format_variables(headers: Sequence[str]) -> list[str]:
        """
        Standard variable keys implied by ``<variable>_p25..p90`` headers.
        """

        discovered: list[str] = []
        for base in detect_wide_columns(headers):
            key = map_variable_name(base) or to_snake_key(base)
            if key and key not in discovered:
                discovered.append(key)
        return discovered


@lru_cache(maxsize=1)
def get_variable_discovery_service() -> VariableDiscoveryService:
    """
    Build and cache the discovery service with env-driven settings.
    """

    return VariableDiscoveryService(batch_size=get_benchmark_settings().discovery_batch_size)
