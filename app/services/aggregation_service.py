"""
app/services/aggregation_service.py

Percentile aggregation over normalized survey rows.

Grouping
--------
Rows are grouped by a caller-chosen key tuple drawn from
``specialty, provider_type, region, year, survey_source, variable``. Output
groups are sorted by key value, so the same input set yields identical
results regardless of input order.

Percentiles
-----------
For percentile ``p`` over a sorted sample of size ``N`` the value at index
``floor(p / 100 * N)`` (clamped to ``[0, N - 1]``) is returned; an empty
sample yields 0.0. The sample for a group is chosen as follows:

    observations  - any row carries an individual ``value``: the sorted
                    values of those rows feed all four percentiles
    summary       - every row reports p25..p90 (all non-zero): each
                    percentile is taken from its own column
    median        - otherwise the rows' reported p50 values

All three keep ``p25 <= p50 <= p75 <= p90``.

Counts
------
``n_incumbents`` sums each row's declared incumbent count (a row without
one counts as a single incumbent). ``n_orgs`` counts distinct organization
identifiers when rows carry them, plus the declared ``n_orgs`` of rows that
do not.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Sequence

from app.config import get_benchmark_settings
from app.domain.survey import (
    GROUPABLE_FIELDS,
    PERCENTILE_FIELDS,
    AggregatedGroup,
    NormalizedRow,
    PercentileSet,
)
from app.errors import ValidationError
from app.services.job_runner import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

PERCENTILE_RANKS: dict[str, float] = {"p25": 25.0, "p50": 50.0, "p75": 75.0, "p90": 90.0}


def percentile_at(sorted_values: Sequence[float], percentile: float) -> float:
    """
    Floor-index percentile of an ascending sample; 0.0 when empty.
    """

    count = len(sorted_values)
    if count == 0:
        return 0.0
    index = math.floor(percentile / 100.0 * count)
    index = max(0, min(count - 1, index))
    return float(sorted_values[index])


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _sort_key(group_key: tuple[tuple[str, Any], ...]) -> tuple[tuple[bool, Any], ...]:
    return tuple((value is None, value if value is not None else "") for _, value in group_key)


@dataclass
class _GroupAccumulator:
    observations: list[float]
    medians: list[float]
    columns: dict[str, list[float]]
    full_summary: bool = True
    n_incumbents: int = 0
    declared_orgs: int = 0
    organization_ids: set[str] | None = None
    row_count: int = 0

    @classmethod
    def empty(cls) -> "_GroupAccumulator":
        return cls(observations=[], medians=[], columns={name: [] for name in PERCENTILE_FIELDS})

    def add(self, row: NormalizedRow) -> None:
        self.row_count += 1
        self.n_incumbents += row.n_incumbents if row.n_incumbents is not None else 1

        if row.organization_id:
            if self.organization_ids is None:
                self.organization_ids = set()
            self.organization_ids.add(row.organization_id)
        elif row.n_orgs is not None:
            self.declared_orgs += row.n_orgs

        if _is_number(row.value):
            self.observations.append(float(row.value))
        if _is_number(row.p50):
            self.medians.append(float(row.p50))

        percentiles = [getattr(row, name) for name in PERCENTILE_FIELDS]
        if all(_is_number(item) and item != 0 for item in percentiles):
            for name, item in zip(PERCENTILE_FIELDS, percentiles):
                self.columns[name].append(float(item))
        else:
            self.full_summary = False

    @property
    def n_orgs(self) -> int:
        distinct = len(self.organization_ids) if self.organization_ids else 0
        return distinct + self.declared_orgs

    def percentiles(self) -> PercentileSet:
        if self.observations:
            sample = sorted(self.observations)
            return PercentileSet(**{name: percentile_at(sample, rank) for name, rank in PERCENTILE_RANKS.items()})
        if self.full_summary and self.row_count and self.columns["p50"]:
            return PercentileSet(
                **{
                    name: percentile_at(sorted(self.columns[name]), rank)
                    for name, rank in PERCENTILE_RANKS.items()
                }
            )
        sample = sorted(self.medians)
        return PercentileSet(**{name: percentile_at(sample, rank) for name, rank in PERCENTILE_RANKS.items()})


@dataclass(frozen=True)
class SummaryRow:
    """
    Simple (mean) and incumbent-weighted summaries for one variable.
    """

    variable: str
    group_count: int
    n_incumbents: int
    n_orgs: int
    simple: PercentileSet
    weighted: PercentileSet


class PercentileAggregationService:
    """
    Groups normalized rows and computes percentile statistics and counts.

    Parameters
    ----------
    batch_size:
        Rows processed between cancellation checks.
    """

    def __init__(self, *, batch_size: int = 1000) -> None:
        self._batch_size = max(1, batch_size)

    def aggregate(
        self,
        rows: Iterable[NormalizedRow],
        group_key: Sequence[str] = GROUPABLE_FIELDS,
        compute_percentiles: bool = True,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[AggregatedGroup]:
        """
        Return one AggregatedGroup per distinct key, sorted by key.

        With ``compute_percentiles=False`` only counts are produced and every
        percentile is 0.0.
        """

        key_fields = self.validate_group_key(group_key)
        accumulators: dict[tuple[tuple[str, Any], ...], _GroupAccumulator] = {}

        processed = 0
        for row in rows:
            if processed % self._batch_size == 0:
                check_cancelled(cancel_token)
            processed += 1
            key = tuple((name, row.group_value(name)) for name in key_fields)
            accumulator = accumulators.get(key)
            if accumulator is None:
                accumulator = _GroupAccumulator.empty()
                accumulators[key] = accumulator
            accumulator.add(row)
        check_cancelled(cancel_token)

        groups = [
            AggregatedGroup(
                group_key=key,
                percentiles=accumulator.percentiles() if compute_percentiles else PercentileSet(),
                n_orgs=accumulator.n_orgs,
                n_incumbents=accumulator.n_incumbents,
                row_count=accumulator.row_count,
            )
            for key, accumulator in sorted(accumulators.items(), key=lambda item: _sort_key(item[0]))
        ]
        logger.debug(
            "Aggregated rows=%d into groups=%d key=%s percentiles=%s",
            processed,
            len(groups),
            key_fields,
            compute_percentiles,
        )
        return groups

    def aggregate_batches(
        self,
        batches: Iterable[Sequence[NormalizedRow]],
        group_key: Sequence[str] = GROUPABLE_FIELDS,
        compute_percentiles: bool = True,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[AggregatedGroup]:
        """
        Aggregate a batched cursor (e.g. ``RowStore.iter_row_batches``),
        checking cancellation at every batch boundary.
        """

        def _rows() -> Iterable[NormalizedRow]:
            for batch in batches:
                check_cancelled(cancel_token)
                yield from batch

        return self.aggregate(
            _rows(),
            group_key,
            compute_percentiles,
            cancel_token=cancel_token,
        )

    def summarize(self, groups: Sequence[AggregatedGroup]) -> list[SummaryRow]:
        """
        Per-variable simple and incumbent-weighted means of group percentiles.

        Groups whose key does not include ``variable`` are summarized under
        an empty variable name.
        """

        by_variable: dict[str, list[AggregatedGroup]] = {}
        for group in groups:
            by_variable.setdefault(group.key_value("variable", "") or "", []).append(group)

        summaries: list[SummaryRow] = []
        for variable in sorted(by_variable):
            members = by_variable[variable]
            total_incumbents = sum(group.n_incumbents for group in members)
            simple = {
                name: sum(group.percentiles.get(name) for group in members) / len(members)
                for name in PERCENTILE_FIELDS
            }
            if total_incumbents > 0:
                weighted = {
                    name: sum(group.percentiles.get(name) * group.n_incumbents for group in members)
                    / total_incumbents
                    for name in PERCENTILE_FIELDS
                }
            else:
                weighted = dict(simple)
            summaries.append(
                SummaryRow(
                    variable=variable,
                    group_count=len(members),
                    n_incumbents=total_incumbents,
                    n_orgs=sum(group.n_orgs for group in members),
                    simple=PercentileSet(**simple),
                    weighted=PercentileSet(**weighted),
                )
            )
        return summaries

    @staticmethod
    def validate_group_key(group_key: Sequence[str]) -> tuple[str, ...]:
        """
        Return the key as a tuple; raises ValidationError for empty, unknown or
        repeated fields.
        """

        key_fields = tuple(group_key)
        if not key_fields:
            raise ValidationError("Group key must name at least one field.", code="empty_group_key")
        unknown = [name for name in key_fields if name not in GROUPABLE_FIELDS]
        if unknown:
            raise ValidationError(
                f"Unknown group key fields: {', '.join(unknown)}.",
                code="invalid_group_key",
                context={"allowed": list(GROUPABLE_FIELDS)},
            )
        if len(set(key_fields)) != len(key_fields):
            raise ValidationError("Group key fields must be unique.", code="duplicate_group_key")
        return key_fields


@lru_cache(maxsize=1)
def get_aggregation_service() -> PercentileAggregationService:
    """
    Build and cache the aggregation service with env-driven settings.
    """

    return PercentileAggregationService(batch_size=get_benchmark_settings().aggregation_batch_size)
