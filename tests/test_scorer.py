import asyncio
from pathlib import Path

import pytest

from polish.config import Metric, Preset, Strategy
from polish.models import MetricResult
from polish.scorer import (
    calculate_score,
    get_strategy_for_metric,
    get_worst_metric,
    normalize_score,
    parse_metric_output,
    run_all_metrics,
    score_preset,
)


def _result(name: str, score: float, weight: float) -> MetricResult:
    return MetricResult(
        name=name,
        raw_value=0.0,
        score=score,
        weight=weight,
        target=0.0,
        higher_is_better=False,
    )


@pytest.mark.parametrize(
    ("output", "expected"),
    [("12", 12.0), ("  3.5\n", 3.5), ("7 errors found", 7.0), ("abc", 0.0), ("", 0.0)],
)
def test_parse_metric_output(output: str, expected: float) -> None:
    assert parse_metric_output(output) == expected


def test_normalize_score_for_both_polarities() -> None:
    lint = Metric(name="lint", command="true", target=0, higher_is_better=False)
    coverage = Metric(name="coverage", command="true", target=80, higher_is_better=True)
    budget = Metric(name="size", command="true", target=200, higher_is_better=False)

    assert normalize_score(10, lint) == 80.0
    assert normalize_score(60, lint) == 0.0
    assert normalize_score(40, coverage) == 50.0
    assert normalize_score(120, coverage) == 100.0
    assert normalize_score(50, budget) == 75.0


def test_direct_computation_of_empty_set_is_zero() -> None:
    assert calculate_score([]) == 0.0
    assert calculate_score([_result("a", 90, 0)]) == 0.0


def test_empty_preset_scores_one_hundred(tmp_path: Path) -> None:
    snapshot = asyncio.run(score_preset(Preset(), tmp_path))

    assert snapshot.score == 100.0
    assert snapshot.metrics == []


def test_composite_stays_within_bounds() -> None:
    results = [_result("a", 100, 3), _result("b", 0, 1), _result("c", 55.5, 2)]
    assert 0.0 <= calculate_score(results) <= 100.0
    assert calculate_score(results) == pytest.approx((300 + 0 + 111) / 6)


def test_worst_metric_prefers_lower_score_at_equal_weight() -> None:
    a = _result("A", 100, 50)
    b = _result("B", 50, 50)

    assert get_worst_metric([a, b]).name == "B"
    assert get_worst_metric([b, a]).name == "B"
    assert get_worst_metric([a, b]).name == "B"


def test_worst_metric_is_weighted_by_impact() -> None:
    a = _result("A", 0, 10)
    b = _result("B", 80, 90)

    assert get_worst_metric([a, b]).name == "B"
    assert get_worst_metric([]) is None


def test_strategy_lookup_matches_metric_name() -> None:
    strategies = [Strategy("fix-lint", "lint"), Strategy("fix-types", "types")]

    assert get_strategy_for_metric("types", strategies).name == "fix-types"
    assert get_strategy_for_metric("coverage", strategies) is None


def test_two_metric_scenario_moves_from_sixty_to_ninety_five(tmp_path: Path) -> None:
    def metrics(lint: int, coverage: int) -> list[Metric]:
        return [
            Metric(name="lint", command=f"echo {lint}", weight=50, target=0),
            Metric(
                name="coverage",
                command=f"echo {coverage}",
                weight=50,
                target=100,
                higher_is_better=True,
            ),
        ]

    before = asyncio.run(run_all_metrics(metrics(10, 40), tmp_path))
    after = asyncio.run(run_all_metrics(metrics(0, 90), tmp_path))

    assert [result.score for result in before] == [80.0, 40.0]
    assert calculate_score(before) == pytest.approx(60.0)
    assert calculate_score(after) == pytest.approx(95.0)
    assert calculate_score(after) - calculate_score(before) >= 0.5
    assert get_worst_metric(before).name == "coverage"


def test_failing_metric_command_falls_back_to_zero(tmp_path: Path) -> None:
    metric = Metric(name="broken", command="echo boom >&2; exit 2", weight=1, target=0)

    [result] = asyncio.run(run_all_metrics([metric], tmp_path))

    assert result.raw_value == 0.0
    assert result.score == 100.0
