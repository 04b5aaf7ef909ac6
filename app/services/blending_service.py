"""
app/services/blending_service.py

Blends percentile statistics from several specialties or sources into one
weighted composite distribution.

Policies
--------
simple               every component weighs 1/N
incumbent-weighted   weight_i = n_incumbents_i / sum(n_incumbents), per variable
custom               caller-supplied percentages that must sum to 100 within
                     ``weight_epsilon``

For each variable, weights are renormalized over the components that report
it, and each blended percentile is ``sum(weight_i * value_i)``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Sequence

from app.config import get_benchmark_settings
from app.domain.survey import PERCENTILE_FIELDS, AggregatedGroup, BlendWeight, PercentileSet
from app.errors import ValidationError

logger = logging.getLogger(__name__)

POLICY_SIMPLE = "simple"
POLICY_INCUMBENT_WEIGHTED = "incumbent-weighted"
POLICY_CUSTOM = "custom"
BLEND_POLICIES: tuple[str, ...] = (POLICY_SIMPLE, POLICY_INCUMBENT_WEIGHTED, POLICY_CUSTOM)

LOW_CONFIDENCE_THRESHOLD = 0.6
SMALL_SAMPLE_INCUMBENTS = 30
DOMINANT_WEIGHT_SHARE = 0.8


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DerivedMetric:
    """
    Secondary metric; ``value`` is None with an ``error`` when undefined.
    """

    name: str
    value: float | None
    error: str | None = None

    @property
    def is_defined(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class ComponentShare:
    label: str
    weight: float
    n_incumbents: int
    n_orgs: int


@dataclass(frozen=True)
class BlendedMetric:
    variable: str
    percentiles: PercentileSet
    n_incumbents: int
    n_orgs: int
    components: tuple[ComponentShare, ...]

    @property
    def iqr(self) -> DerivedMetric:
        return DerivedMetric(name="iqr", value=self.percentiles.iqr)


@dataclass(frozen=True)
class BlendedResult:
    policy: str
    component_key: tuple[str, ...]
    components: tuple[str, ...]
    metrics: dict[str, BlendedMetric]
    effective_rate: dict[str, DerivedMetric]
    total_incumbents: int
    confidence: float | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_policy(policy: str) -> str:
    normalized = policy.strip().lower().replace("_", "-").replace(" ", "-")
    if normalized not in BLEND_POLICIES:
        raise ValidationError(
            f"Unknown blend policy {policy!r}.",
            code="invalid_blend_policy",
            context={"allowed": list(BLEND_POLICIES)},
        )
    return normalized


def confidence_score(
    total_incumbents: int,
    component_count: int,
    *,
    full_incumbents: int = 1000,
    full_components: int = 5,
) -> float:
    """
    ``0.7 * min(incumbents / full_incumbents, 1) + 0.3 * min(components / full_components, 1)``

    Non-decreasing in both inputs and bounded to [0, 1].
    """

    incumbent_factor = min(max(total_incumbents, 0) / max(full_incumbents, 1), 1.0)
    component_factor = min(max(component_count, 0) / max(full_components, 1), 1.0)
    return round(0.7 * incumbent_factor + 0.3 * component_factor, 2)


def divide_percentiles(
    numerator: PercentileSet | None,
    denominator: PercentileSet | None,
    *,
    name: str,
) -> dict[str, DerivedMetric]:
    """
    Percentile-wise ratio, undefined (never inf or NaN) where it cannot be computed.
    """

    results: dict[str, DerivedMetric] = {}
    for percentile in PERCENTILE_FIELDS:
        metric_name = f"{name}_{percentile}"
        if numerator is None or denominator is None:
            results[percentile] = DerivedMetric(
                name=metric_name,
                value=None,
                error="Required metrics are not available in the blend.",
            )
            continue
        bottom = denominator.get(percentile)
        if bottom == 0:
            results[percentile] = DerivedMetric(
                name=metric_name,
                value=None,
                error="Division by zero: productivity percentile is 0.",
            )
            continue
        value = numerator.get(percentile) / bottom
        if not math.isfinite(value):
            results[percentile] = DerivedMetric(name=metric_name, value=None, error="Result is not finite.")
            continue
        results[percentile] = DerivedMetric(name=metric_name, value=value)
    return results


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BlendingService:
    """
    Combines aggregated groups under one of three weighting policies.

    Parameters
    ----------
    weight_epsilon:
        Allowed distance of a custom weight total from 100.
    compensation_variable / productivity_variable:
        Variables used for the effective rate (TCC per wRVU) derivation.
    """

    def __init__(
        self,
        *,
        weight_epsilon: float = 0.5,
        full_incumbents: int = 1000,
        full_components: int = 5,
        compensation_variable: str = "tcc",
        productivity_variable: str = "work_rvus",
    ) -> None:
        self._weight_epsilon = max(0.0, weight_epsilon)
        self._full_incumbents = max(1, full_incumbents)
        self._full_components = max(1, full_components)
        self._compensation_variable = compensation_variable
        self._productivity_variable = productivity_variable

    def blend(
        self,
        groups: Sequence[AggregatedGroup],
        policy: str,
        weights: Sequence[BlendWeight] | None = None,
        *,
        component_key: Sequence[str] = ("specialty",),
        include_confidence: bool = True,
    ) -> BlendedResult:
        """
        Blend ``groups`` into one distribution per variable.

        Components are identified by ``component_key`` (labels join key
        values with `` / ``). Several groups for the same component and
        variable are first merged by incumbent weighting.
        """

        policy_name = normalize_policy(policy)
        key_fields = tuple(component_key)
        if not groups:
            raise ValidationError("At least one aggregated group is required to blend.", code="empty_blend")
        if not key_fields:
            raise ValidationError("Component key must name at least one field.", code="empty_component_key")

        table = self._component_table(groups, key_fields)
        components = tuple(sorted({label for label, _ in table}))
        warnings: list[str] = []

        custom_weights: dict[str, float] = {}
        if policy_name == POLICY_CUSTOM:
            custom_weights = self._validate_custom_weights(weights, components, warnings)

        variables = sorted({variable for _, variable in table})
        metrics: dict[str, BlendedMetric] = {}
        for variable in variables:
            present = [label for label in components if (label, variable) in table]
            raw_weights = {
                label: self._raw_weight(policy_name, table[(label, variable)], custom_weights.get(label, 0.0))
                for label in present
            }
            total = sum(raw_weights.values())
            if total <= 0:
                if policy_name == POLICY_CUSTOM:
                    warnings.append(f"Variable {variable!r} has no weighted components and was skipped.")
                    continue
                warnings.append(f"Variable {variable!r} has no incumbents; equal weights were used.")
                raw_weights = {label: 1.0 for label in present}
                total = float(len(present))

            normalized = {label: raw_weights[label] / total for label in present if raw_weights[label] > 0}
            blended = {
                name: sum(weight * table[(label, variable)].percentiles.get(name) for label, weight in normalized.items())
                for name in PERCENTILE_FIELDS
            }
            shares = tuple(
                ComponentShare(
                    label=label,
                    weight=weight,
                    n_incumbents=table[(label, variable)].n_incumbents,
                    n_orgs=table[(label, variable)].n_orgs,
                )
                for label, weight in normalized.items()
            )
            metrics[variable] = BlendedMetric(
                variable=variable,
                percentiles=PercentileSet(**blended),
                n_incumbents=sum(share.n_incumbents for share in shares),
                n_orgs=sum(share.n_orgs for share in shares),
                components=shares,
            )
            dominant = max(shares, key=lambda share: share.weight)
            if len(shares) > 1 and dominant.weight > DOMINANT_WEIGHT_SHARE:
                warnings.append(
                    f"Component {dominant.label!r} carries {dominant.weight:.0%} of {variable!r}."
                )

        component_incumbents = {
            label: max(
                (group.n_incumbents for (item, _), group in table.items() if item == label),
                default=0,
            )
            for label in components
        }
        total_incumbents = sum(component_incumbents.values())
        for label, incumbents in component_incumbents.items():
            if incumbents < SMALL_SAMPLE_INCUMBENTS:
                warnings.append(f"Component {label!r} has only {incumbents} incumbents.")

        confidence = None
        if include_confidence:
            confidence = confidence_score(
                total_incumbents,
                len(components),
                full_incumbents=self._full_incumbents,
                full_components=self._full_components,
            )
            if confidence < LOW_CONFIDENCE_THRESHOLD:
                warnings.append(f"Low confidence blend ({confidence:.2f}).")

        compensation = metrics.get(self._compensation_variable)
        productivity = metrics.get(self._productivity_variable)
        effective_rate = divide_percentiles(
            compensation.percentiles if compensation else None,
            productivity.percentiles if productivity else None,
            name="effective_rate",
        )

        logger.debug(
            "Blended policy=%s components=%d variables=%d warnings=%d",
            policy_name,
            len(components),
            len(metrics),
            len(warnings),
        )
        return BlendedResult(
            policy=policy_name,
            component_key=key_fields,
            components=components,
            metrics=metrics,
            effective_rate=effective_rate,
            total_incumbents=total_incumbents,
            confidence=confidence,
            warnings=tuple(warnings),
        )

    @staticmethod
    def component_label(group: AggregatedGroup, component_key: Sequence[str]) -> str:
        missing = [name for name in component_key if name not in group.key_dict()]
        if missing:
            raise ValidationError(
                f"Aggregated group key lacks component field(s): {', '.join(missing)}.",
                code="component_key_mismatch",
                context={"group_key": [name for name, _ in group.group_key]},
            )
        return " / ".join("" if group.key_value(name) is None else str(group.key_value(name)) for name in component_key)

    def _component_table(
        self,
        groups: Sequence[AggregatedGroup],
        component_key: tuple[str, ...],
    ) -> dict[tuple[str, str], AggregatedGroup]:
        buckets: dict[tuple[str, str], list[AggregatedGroup]] = {}
        for group in groups:
            label = self.component_label(group, component_key)
            variable = str(group.key_value("variable", "") or "")
            buckets.setdefault((label, variable), []).append(group)
        return {key: self._merge(members) for key, members in buckets.items()}

    @staticmethod
    def _merge(members: list[AggregatedGroup]) -> AggregatedGroup:
        if len(members) == 1:
            return members[0]
        total = sum(group.n_incumbents for group in members)
        if total > 0:
            percentiles = {
                name: sum(group.percentiles.get(name) * group.n_incumbents for group in members) / total
                for name in PERCENTILE_FIELDS
            }
        else:
            percentiles = {
                name: sum(group.percentiles.get(name) for group in members) / len(members)
                for name in PERCENTILE_FIELDS
            }
        return AggregatedGroup(
            group_key=members[0].group_key,
            percentiles=PercentileSet(**percentiles),
            n_orgs=sum(group.n_orgs for group in members),
            n_incumbents=total,
            row_count=sum(group.row_count for group in members),
        )

    @staticmethod
    def _raw_weight(policy: str, group: AggregatedGroup, custom_weight: float) -> float:
        if policy == POLICY_SIMPLE:
            return 1.0
        if policy == POLICY_INCUMBENT_WEIGHTED:
            return float(max(group.n_incumbents, 0))
        return custom_weight

    def _validate_custom_weights(
        self,
        weights: Sequence[BlendWeight] | None,
        components: tuple[str, ...],
        warnings: list[str],
    ) -> dict[str, float]:
        if not weights:
            raise ValidationError("Custom blending requires a weight list.", code="missing_weights")

        resolved: dict[str, float] = {}
        for item in weights:
            if not math.isfinite(item.weight) or item.weight < 0 or item.weight > 100:
                raise ValidationError(
                    f"Weight for {item.specialty!r} must be between 0 and 100.",
                    code="invalid_weight",
                    context={"specialty": item.specialty, "weight": item.weight},
                )
            if item.specialty in resolved:
                raise ValidationError(
                    f"Weight for {item.specialty!r} is listed twice.",
                    code="duplicate_weight",
                )
            resolved[item.specialty] = item.weight

        total = sum(resolved.values())
        if abs(total - 100.0) > self._weight_epsilon:
            raise ValidationError(
                f"Custom weights must sum to 100 (got {total:g}).",
                code="weights_not_100",
                context={"total": total, "epsilon": self._weight_epsilon},
            )

        for label in resolved:
            if label not in components:
                warnings.append(f"Weight for {label!r} matches no blended component.")
        for label in components:
            if label not in resolved:
                warnings.append(f"Component {label!r} has no custom weight and was excluded.")
        return resolved


@lru_cache(maxsize=1)
def get_blending_service() -> BlendingService:
    """
    Build and cache the blending service with env-driven settings.
    """

    settings = get_benchmark_settings()
    return BlendingService(
        weight_epsilon=settings.blend_weight_epsilon,
        full_incumbents=settings.confidence_full_incumbents,
        full_components=settings.confidence_full_components,
        compensation_variable=settings.compensation_variable,
        productivity_variable=settings.productivity_variable,
    )
