from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish.config import Metric, Preset, Strategy
from polish.executor import run_command
from polish.models import MetricResult

logger = logging.getLogger(__name__)

NUMBER_PATTERN = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")


@dataclass(slots=True)
class ScoreSnapshot:
    score: float
    metrics: list[MetricResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": round(self.score, 2),
            "metrics": [metric.to_dict() for metric in self.metrics],
        }


def parse_metric_output(output: str) -> float:
    """Read the leading number of a metric command's stdout; anything else is 0."""
    match = NUMBER_PATTERN.match(output.strip())
    if not match:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:
        return 0.0


def normalize_score(value: float, metric: Metric) -> float:
    if metric.higher_is_better:
        if metric.target == 0:
            return 100.0 if value >= 0 else 0.0
        return max(0.0, min(100.0, value / metric.target * 100))
    if metric.target == 0:
        return max(0.0, 100.0 - value * 2)
    return max(0.0, min(100.0, 100.0 - value / metric.target * 100))


def _diagnostic(metric: Metric, value: float, score: float) -> str:
    if score >= 80:
        return ""
    direction = "increase" if metric.higher_is_better else "reduce"
    return f"{metric.name}: {value:g} (target: {metric.target:g}). Need to {direction}."


async def run_metric(metric: Metric, cwd: Path) -> MetricResult:
    result = await run_command(metric.command, cwd, timeout_seconds=metric.timeout_seconds)
    if result.timed_out:
        logger.warning("Metric %s timed out; scoring raw value 0", metric.name)
    value = parse_metric_output(result.stdout)
    score = normalize_score(value, metric)
    return MetricResult(
        name=metric.name,
        raw_value=value,
        score=score,
        weight=metric.weight,
        target=metric.target,
        higher_is_better=metric.higher_is_better,
        diagnostic=_diagnostic(metric, value, score),
    )


async def run_all_metrics(metrics: Sequence[Metric], cwd: Path) -> list[MetricResult]:
    return list(await asyncio.gather(*(run_metric(metric, cwd) for metric in metrics)))


def calculate_score(results: Sequence[MetricResult]) -> float:
    """Weighted average of normalized scores; no weight at all scores 0."""
    total_weight = sum(result.weight for result in results)
    if total_weight <= 0:
        return 0.0
    weighted = sum(result.score * result.weight for result in results)
    return max(0.0, min(100.0, weighted / total_weight))


async def score_preset(preset: Preset, cwd: Path) -> ScoreSnapshot:
    """Measure every metric of a preset. A preset without metrics scores 100."""
    if not preset.metrics:
        return ScoreSnapshot(score=100.0, metrics=[])
    results = await run_all_metrics(preset.metrics, cwd)
    return ScoreSnapshot(score=calculate_score(results), metrics=results)


def get_worst_metric(results: Sequence[MetricResult]) -> MetricResult | None:
    """Pick the metric whose shortfall costs the most composite points."""
    worst: MetricResult | None = None
    worst_impact = -1.0
    for result in sorted(results, key=lambda item: item.name):
        impact = (100.0 - result.score) * result.weight
        if impact > worst_impact:
            worst = result
            worst_impact = impact
    return worst


def get_strategy_for_metric(name: str, strategies: Sequence[Strategy]) -> Strategy | None:
    for strategy in strategies:
        if strategy.focus == name:
            return strategy
    return None
