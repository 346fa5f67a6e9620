"""Prompt text for the scenario agent."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError

from flowpilot.browser.viewports import Viewport
from flowpilot.schemas.agent_models import Scenario

SYSTEM_PROMPT = """You are a QA test executor agent. Your job is to execute test scenarios on a web game or application using browser automation tools.

## Instructions

1. You will receive a test scenario with named steps describing actions to perform and expected outcomes to verify.
2. Execute each step using the available browser tools (click, type_text, scroll, navigate, screenshot, etc.).
3. After each action, observe the screenshot to verify the result matches expectations.
4. If a step fails, try reasonable recovery strategies (wait, scroll, retry) before reporting failure.
5. When all steps are complete and verified, call report_result with status "passed".
6. If a step cannot be completed after reasonable attempts, call report_result with status "failed" and explain which step failed and why.

## Browser Info

- Viewport: {width}x{height} pixels
- Tools that modify the page (click, type_text, scroll, navigate) automatically return a screenshot.
- Use the screenshot tool only when you need to observe without interacting.

## Important

- Execute steps in order.
- Be precise with click coordinates; look at the screenshot carefully to find the correct UI elements.
- Wait briefly after navigation or major state changes for the page to settle.
- Do NOT invent steps that aren't in the scenario.
- Always call report_result when done. Never leave a scenario without a verdict."""

KICKOFF_TEMPLATE = (
    "Execute the following test scenario:\n\n{scenario}\n\n"
    "The browser is already on the game page. Start executing the test steps now."
)


def system_prompt(viewport: Viewport) -> str:
    return SYSTEM_PROMPT.format(width=viewport.width, height=viewport.height)


def scenario_prompt(scenario: Scenario) -> str:
    """Render a scenario as a numbered markdown step list."""
    text = f"## {scenario.name}\n\n"
    if scenario.description:
        text += scenario.description + "\n\n"
    text += "### Steps:\n"
    for number, step in enumerate(scenario.steps, start=1):
        text += f"{number}. **{step.action}** - {step.target}"
        if step.value:
            text += f' (value: "{step.value}")'
        if step.expected:
            text += f"\n   Expected: {step.expected}"
        text += "\n"
    return text


def kickoff_text(scenario: Scenario) -> str:
    return KICKOFF_TEMPLATE.format(scenario=scenario_prompt(scenario))


def scenarios_from_result(result: Mapping[str, Any]) -> list[Scenario]:
    """Read scenarios from ``result["analysis"]["scenarios"]`` or ``result["scenarios"]``."""
    container = result.get("analysis")
    if not isinstance(container, Mapping):
        container = result
    raw = container.get("scenarios")
    if not isinstance(raw, list) or not raw:
        raise ValueError("no scenarios found in analysis result")
    scenarios: list[Scenario] = []
    for item in raw:
        try:
            scenarios.append(Scenario.model_validate(item))
        except ValidationError as exc:
            raise ValueError(f"invalid scenario in analysis result: {exc}") from exc
    return scenarios
