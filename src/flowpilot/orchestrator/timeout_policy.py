"""Deadlines for the external analysis process."""

from __future__ import annotations

from typing import Sequence

from flowpilot.config.models import TimeoutPolicyConfig
from flowpilot.schemas.job_models import AnalysisProfile


def analysis_timeout(profile: AnalysisProfile, policy: TimeoutPolicyConfig) -> int:
    """Seconds allowed for one analysis run.

    Agent runs get ``steps * per_step + buffer`` clamped to ``[min, max]``;
    the upper bound widens when adaptive or extended timeouts are requested.
    """
    if not profile.agent_mode:
        return policy.default_seconds
    steps = profile.agent_steps or policy.default_agent_steps
    if profile.adaptive and profile.max_total_steps:
        steps = profile.max_total_steps
    seconds = steps * policy.per_step_seconds + policy.buffer_seconds
    if profile.adaptive_timeout and profile.max_total_timeout:
        extended = profile.max_total_timeout * 60 + policy.adaptive_buffer_seconds
        seconds = max(seconds, extended)
    upper = policy.max_seconds
    if profile.adaptive or profile.adaptive_timeout:
        upper = policy.adaptive_max_seconds
    return max(policy.min_seconds, min(seconds, upper))


def batch_timeout(
    profile: AnalysisProfile,
    devices: Sequence[str],
    policy: TimeoutPolicyConfig,
) -> int:
    """Sum of per-device deadlines, capped at the batch ceiling."""
    per_device = analysis_timeout(profile, policy)
    return min(per_device * max(1, len(devices)), policy.batch_ceiling_seconds)


def continue_timeout(profile: AnalysisProfile, policy: TimeoutPolicyConfig) -> int:
    """Resumed runs only finish the remaining stages, so they get short deadlines."""
    if not profile.agent_mode:
        return policy.continue_seconds
    if profile.adaptive or profile.adaptive_timeout:
        return policy.continue_adaptive_seconds
    return policy.continue_agent_seconds
