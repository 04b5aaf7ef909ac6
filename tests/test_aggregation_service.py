"""
tests/test_aggregation_service.py

Pytest unit tests for PercentileAggregationService.

Coverage
--------
- Floor-index percentile selection for each sample mode
- Deterministic, key-sorted output independent of input order
- Incumbent and organization counting rules
- Group key validation and cancellation
- Simple vs incumbent-weighted summaries
"""

from __future__ import annotations

import random

import pytest

from app.errors import JobCancelledError, ValidationError
from app.services.aggregation_service import PercentileAggregationService, percentile_at
from app.services.job_runner import CancellationToken
from tests.conftest import make_row


@pytest.fixture()
def service() -> PercentileAggregationService:
    return PercentileAggregationService(batch_size=2)


def _median_only(p50: float, **overrides):
    return make_row(p25=None, p50=p50, p75=None, p90=None, **overrides)


# ---------------------------------------------------------------------------
# Percentile rule
# ---------------------------------------------------------------------------


def test_percentile_at_uses_floor_index() -> None:
    sample = [1.0, 2.0, 3.0, 4.0]
    assert percentile_at(sample, 25) == 2.0
    assert percentile_at(sample, 50) == 3.0
    assert percentile_at(sample, 90) == 4.0
    assert percentile_at(sample, 100) == 4.0
    assert percentile_at([], 50) == 0.0


def test_observations_feed_every_percentile(service) -> None:
    rows = [make_row(p25=None, p50=None, p75=None, p90=None, value=float(item)) for item in range(10, 0, -1)]

    (group,) = service.aggregate(rows, ("specialty",))

    assert group.percentiles.as_dict() == {"p25": 3.0, "p50": 6.0, "p75": 8.0, "p90": 10.0}


def test_full_summary_rows_use_their_own_columns(service) -> None:
    rows = [
        make_row(),
        make_row(p25=200_000.0, p50=350_000.0, p75=450_000.0, p90=700_000.0),
    ]

    (group,) = service.aggregate(rows, ("specialty", "variable"))

    assert group.percentiles.as_dict() == {
        "p25": 200_000.0,
        "p50": 400_000.0,
        "p75": 500_000.0,
        "p90": 700_000.0,
    }


def test_partial_summary_rows_fall_back_to_reported_medians(service) -> None:
    rows = [_median_only(value) for value in (400.0, 100.0, 300.0)] + [make_row(p25=150.0, p50=200.0, p75=250.0, p90=260.0)]

    (group,) = service.aggregate(rows, ("specialty",))

    assert group.percentiles.as_dict() == {"p25": 200.0, "p50": 300.0, "p75": 400.0, "p90": 400.0}


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_percentiles_are_monotonic(service, seed: int) -> None:
    rng = random.Random(seed)
    rows = [
        make_row(p25=None, p50=None, p75=None, p90=None, value=rng.uniform(1, 1_000_000))
        for _ in range(37)
    ]

    (group,) = service.aggregate(rows, ("specialty",))
    p = group.percentiles

    assert p.p25 <= p.p50 <= p.p75 <= p.p90


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def test_output_is_sorted_and_order_independent(service) -> None:
    rows = [
        make_row(specialty="Urology", region="Western"),
        make_row(specialty="Cardiology", region="Eastern"),
        make_row(specialty="Cardiology", region="Western", p50=450_000.0),
        make_row(specialty="Anesthesiology", region="Eastern"),
        make_row(specialty="Cardiology", region="Eastern", year=None),
    ]
    shuffled = list(rows)
    random.Random(7).shuffle(shuffled)

    first = service.aggregate(rows, ("specialty", "region"))
    second = service.aggregate(shuffled, ("specialty", "region"))

    assert first == second
    assert [group.key_dict() for group in first] == [
        {"specialty": "Anesthesiology", "region": "Eastern"},
        {"specialty": "Cardiology", "region": "Eastern"},
        {"specialty": "Cardiology", "region": "Western"},
        {"specialty": "Urology", "region": "Western"},
    ]


def test_missing_key_values_sort_last(service) -> None:
    rows = [make_row(year=None), make_row(year=2023), make_row(year=2024)]

    groups = service.aggregate(rows, ("year",))

    assert [group.key_value("year") for group in groups] == [2023, 2024, None]


def test_empty_input_yields_no_groups(service) -> None:
    assert service.aggregate([], ("specialty",)) == []


def test_counts(service) -> None:
    rows = [
        make_row(n_incumbents=40, n_orgs=3),
        make_row(n_incumbents=None, n_orgs=None),
        make_row(n_incumbents=5, organization_id="org-1", value=1.0),
        make_row(n_incumbents=None, organization_id="org-1", value=2.0),
        make_row(n_incumbents=None, organization_id="org-2", value=3.0),
    ]

    (group,) = service.aggregate(rows, ("specialty",))

    assert group.n_incumbents == 40 + 1 + 5 + 1 + 1
    assert group.n_orgs == 3 + 2
    assert group.row_count == 5


def test_counts_only_mode_zeroes_percentiles(service) -> None:
    (group,) = service.aggregate([make_row(), make_row()], ("variable",), compute_percentiles=False)

    assert group.percentiles.as_dict() == {"p25": 0.0, "p50": 0.0, "p75": 0.0, "p90": 0.0}
    assert group.n_incumbents == 200


@pytest.mark.parametrize(
    ("group_key", "code"),
    [
        ((), "empty_group_key"),
        (("specialty", "salary_band"), "invalid_group_key"),
        (("specialty", "specialty"), "duplicate_group_key"),
    ],
)
def test_invalid_group_keys(service, group_key, code: str) -> None:
    with pytest.raises(ValidationError) as ctx:
        service.aggregate([make_row()], group_key)
    assert ctx.value.code == code


def test_aggregate_batches_matches_flat_input(service) -> None:
    rows = [make_row(specialty=name) for name in ("Cardiology", "Urology", "Cardiology")]

    batched = service.aggregate_batches([rows[:2], rows[2:]], ("specialty",))

    assert batched == service.aggregate(rows, ("specialty",))


def test_cancelled_aggregation_raises(service) -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelledError):
        service.aggregate_batches([[make_row()]], ("specialty",), cancel_token=token)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def test_summarize_simple_and_weighted(service) -> None:
    rows = [
        make_row(specialty="Cardiology", n_incumbents=100, p25=None, p50=400.0, p75=None, p90=None),
        make_row(specialty="Urology", n_incumbents=300, p25=None, p50=200.0, p75=None, p90=None),
        make_row(specialty="Urology", variable="work_rvus", n_incumbents=10, p25=None, p50=7.0, p75=None, p90=None),
    ]
    groups = service.aggregate(rows, ("specialty", "variable"))

    summaries = {summary.variable: summary for summary in service.summarize(groups)}

    tcc = summaries["tcc"]
    assert tcc.group_count == 2
    assert tcc.n_incumbents == 400
    assert tcc.simple.p50 == pytest.approx(300.0)
    assert tcc.weighted.p50 == pytest.approx(250.0)
    assert summaries["work_rvus"].weighted.p50 == pytest.approx(7.0)


def test_summarize_without_variable_key(service) -> None:
    groups = service.aggregate([make_row(), make_row(specialty="Urology")], ("specialty",))

    (summary,) = service.summarize(groups)

    assert summary.variable == ""
    assert summary.group_count == 2
