"""Statistical analysis for A/B tests between model versions."""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy import stats

from .contracts import (
    ABResult,
    ABTestSetup,
    Cohort,
    Direction,
    Hypothesis,
    HypothesisResult,
    StatisticalConfig,
)


def required_sample_size(config: StatisticalConfig, baseline_std: float) -> int:
    """Per-cohort sample size to detect `minimum_detectable_effect` at the configured power."""
    if config.minimum_detectable_effect <= 0 or baseline_std <= 0:
        return config.minimum_sample_size
    alpha = 1.0 - config.confidence_level
    z_alpha = stats.norm.ppf(1.0 - alpha / 2.0)
    z_power = stats.norm.ppf(config.power)
    n = 2.0 * ((z_alpha + z_power) ** 2) * (baseline_std**2) / (config.minimum_detectable_effect**2)
    return max(int(np.ceil(n)), config.minimum_sample_size)


def _two_sample_z(control: pd.Series, treatment: pd.Series) -> tuple[float, float]:
    """Return (z statistic, two-sided p-value) for a difference in means."""
    se = float(np.sqrt(control.var(ddof=1) / len(control) + treatment.var(ddof=1) / len(treatment)))
    diff = float(treatment.mean() - control.mean())
    if se == 0 or np.isnan(se):
        return (0.0, 1.0) if diff == 0 else (float(np.sign(diff)) * np.inf, 0.0)
    z = diff / se
    return z, 2.0 * (1.0 - stats.norm.cdf(abs(z)))


def evaluate_hypothesis(hypothesis: Hypothesis, control: pd.Series, treatment: pd.Series) -> HypothesisResult:
    control_mean = float(control.mean())
    treatment_mean = float(treatment.mean())
    if control_mean != 0:
        effect = (treatment_mean - control_mean) / abs(control_mean)
    else:
        effect = treatment_mean - control_mean
    _, p_value = _two_sample_z(control, treatment)
    significant = p_value < hypothesis.significance_level
    moved_up = effect > 0
    expected_up = hypothesis.expected_direction == Direction.INCREASE
    return HypothesisResult(
        metric=hypothesis.metric,
        control_mean=control_mean,
        treatment_mean=treatment_mean,
        relative_effect=effect,
        p_value=float(p_value),
        significant=bool(significant),
        supports_hypothesis=bool(significant and moved_up == expected_up and abs(effect) >= hypothesis.expected_magnitude),
    )


def analyze_observations(
    setup: ABTestSetup,
    observations: dict[Cohort, dict[str, list[float]]],
) -> tuple[ABResult, str | None]:
    """
    Evaluate every hypothesis and pick a winner.

    Returns (result, inconclusive_reason). The reason is None only when a
    winner was decided.
    """
    control_obs = observations.get(Cohort.CONTROL, {})
    treatment_obs = observations.get(Cohort.TREATMENT, {})
    control_n = max((len(v) for v in control_obs.values()), default=0)
    treatment_n = max((len(v) for v in treatment_obs.values()), default=0)
    result = ABResult(control_samples=control_n, treatment_samples=treatment_n)

    minimum = setup.statistics.minimum_sample_size
    if control_n < minimum or treatment_n < minimum:
        return result, f"insufficient samples (control={control_n}, treatment={treatment_n}, required={minimum})"
    if not setup.hypotheses:
        return result, "no hypotheses configured"

    supporting = 0
    opposing = 0
    for hypothesis in setup.hypotheses:
        control = pd.Series(control_obs.get(hypothesis.metric, []), dtype=float)
        treatment = pd.Series(treatment_obs.get(hypothesis.metric, []), dtype=float)
        if len(control) < 2 or len(treatment) < 2:
            return result, f"metric '{hypothesis.metric}' lacks observations in one cohort"
        needed = required_sample_size(setup.statistics, float(control.std(ddof=1)))
        if min(len(control), len(treatment)) < needed:
            return result, (
                f"insufficient samples for '{hypothesis.metric}' "
                f"(control={len(control)}, treatment={len(treatment)}, required={needed})"
            )
        outcome = evaluate_hypothesis(hypothesis, control, treatment)
        result.hypothesis_results.append(outcome)
        if outcome.supports_hypothesis:
            supporting += 1
        elif outcome.significant and (outcome.relative_effect > 0) != (hypothesis.expected_direction == Direction.INCREASE):
            opposing += 1

    if supporting and not opposing:
        result.winner = Cohort.TREATMENT
        return result, None
    if opposing and not supporting:
        result.winner = Cohort.CONTROL
        return result, None
    if supporting and opposing:
        return result, "significant results conflict across hypotheses"
    return result, "no hypothesis reached significance"
