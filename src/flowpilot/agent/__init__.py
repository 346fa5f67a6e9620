"""Scenario agent exports."""

from flowpilot.agent.prompts import scenario_prompt, scenarios_from_result, system_prompt
from flowpilot.agent.scenario_executor import ScenarioExecutor
from flowpilot.agent.tools import REPORT_RESULT_TOOL, browser_tools, scenario_tools
from flowpilot.agent.transcript import (
    SCREENSHOT_PLACEHOLDER,
    AgentTranscript,
    ScreenshotWindow,
)

__all__ = [
    "AgentTranscript",
    "REPORT_RESULT_TOOL",
    "SCREENSHOT_PLACEHOLDER",
    "ScenarioExecutor",
    "ScreenshotWindow",
    "browser_tools",
    "scenario_prompt",
    "scenario_tools",
    "scenarios_from_result",
    "system_prompt",
]
