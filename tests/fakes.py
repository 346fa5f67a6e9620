"""Stand-ins for the browser page, the model client and the analysis CLI."""

from __future__ import annotations

import base64
import os
import sys
from pathlib import Path
from typing import Any, Sequence

from flowpilot.browser.viewports import Viewport
from flowpilot.config.loader import load_app_config
from flowpilot.orchestrator.services import JobServices
from flowpilot.schemas.agent_models import (
    AgentMessage,
    ModelResponse,
    TextBlock,
    ToolDefinition,
    ToolUseBlock,
)

SHOT_BYTES = b"\xff\xd8fake-jpeg"
SHOT_B64 = base64.b64encode(SHOT_BYTES).decode("ascii")


class FakePage:
    """Records every call; screenshots return fixed JPEG bytes."""

    def __init__(
        self,
        *,
        url: str = "about:blank",
        eval_results: dict[str, Any] | None = None,
        screenshot_bytes: bytes = SHOT_BYTES,
        fail_goto: bool = False,
    ) -> None:
        self._url = url
        self.calls: list[tuple[str, Any]] = []
        self.eval_results = eval_results or {}
        self.screenshot_bytes = screenshot_bytes
        self.fail_goto = fail_goto
        self.console: list[str] = []
        self.closed = False

    @property
    def url(self) -> str:
        return self._url

    async def goto(self, url: str) -> None:
        self.calls.append(("goto", url))
        if self.fail_goto:
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        self._url = url

    async def evaluate(self, script: str) -> Any:
        self.calls.append(("evaluate", script))
        for needle, result in self.eval_results.items():
            if needle in script:
                if isinstance(result, Exception):
                    raise result
                return result
        return None

    async def click(self, x: float, y: float) -> None:
        self.calls.append(("click", (x, y)))

    async def type_text(self, text: str) -> None:
        self.calls.append(("type_text", text))

    async def press_key(self, key: str) -> None:
        self.calls.append(("press_key", key))

    async def scroll(self, delta_x: float, delta_y: float) -> None:
        self.calls.append(("scroll", (delta_x, delta_y)))

    async def screenshot(self) -> bytes:
        self.calls.append(("screenshot", None))
        return self.screenshot_bytes

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        self.calls.append(("wait_for_selector", selector))
        return selector.startswith("#")

    async def title(self) -> str:
        return "Fake Game"

    def console_messages(self) -> list[str]:
        return list(self.console)

    async def close(self) -> None:
        self.closed = True

    def named(self, name: str) -> list[Any]:
        return [arg for call, arg in self.calls if call == name]


class FakeBudgeter:
    """Character-based stand-in for the tiktoken budgeter."""

    def truncate(self, text: str, budget: int) -> str:
        if len(text) <= budget:
            return text
        return text[:budget] + "... (truncated)"


class FakeModel:
    """Replays scripted vision answers and tool-calling responses."""

    model = "fake-model"

    def __init__(
        self,
        *,
        vision: Sequence[str | Exception] = (),
        responses: Sequence[ModelResponse | Exception] = (),
    ) -> None:
        self.vision = list(vision)
        self.responses = list(responses)
        self.prompts: list[str] = []
        self.turns: list[list[AgentMessage]] = []
        self.image_counts: list[int] = []

    async def analyze_with_image(
        self, prompt: str, image_b64: str, *, media_type: str = "image/jpeg"
    ) -> str:
        self.prompts.append(prompt)
        answer = self.vision.pop(0) if len(self.vision) > 1 else self.vision[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def call_with_tools(
        self,
        system_prompt: str,
        messages: Sequence[AgentMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelResponse:
        self.turns.append(list(messages))
        self.image_counts.append(_count_images(messages))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def tool_call(name: str, call_id: str = "t1", text: str = "", **arguments: Any) -> ModelResponse:
    """Assistant response containing optional text and one tool call."""
    content: list[Any] = []
    if text:
        content.append(TextBlock(text=text))
    content.append(ToolUseBlock(id=call_id, name=name, input=arguments))
    return ModelResponse(content=content, stop_reason="tool_use")


def _count_images(messages: Sequence[AgentMessage]) -> int:
    count = 0
    for message in messages:
        for block in message.content:
            if block.type == "image":
                count += 1
            elif block.type == "tool_result":
                count += sum(1 for item in block.content if item.type == "image")
    return count


FAKE_CLI_SCRIPT = r'''
import json
import os
import sys
import time
from pathlib import Path

args = sys.argv[1:]
if os.environ.get("FAKE_CLI_LOG"):
    with open(os.environ["FAKE_CLI_LOG"], "a", encoding="utf-8") as handle:
        handle.write(json.dumps(args) + "\n")
behavior = os.environ.get("FAKE_CLI_BEHAVIOR", "ok")


def option(name, default=None):
    return args[args.index(name) + 1] if name in args else default


def progress(step, message):
    sys.stderr.write(f"PROGRESS:{step}:{message}\n")
    sys.stderr.flush()


if args[0] == "run":
    failing = os.environ.get("FAKE_FAILING_FLOW")
    flows = sorted(Path(option("--flows")).glob("*.yaml"))
    print(f"Running {len(flows)} flows")
    for index, path in enumerate(flows, start=1):
        marker = "❌" if path.stem == failing else "✅"
        print(f"   {marker} {index}. {path.name} (1s)", flush=True)
    if behavior == "hang":
        Path(os.environ["FAKE_CLI_PIDFILE"]).write_text(str(os.getpid()), encoding="utf-8")
        time.sleep(60)
    if failing:
        sys.stderr.write(f"1/{len(flows)} flows failed\n")
        sys.exit(1)
    sys.exit(0)

output = Path(option("--output"))
viewport = option("--viewport", "desktop-std")
resuming = "--resume-from" in args
progress("scouting", "Loading page")
if resuming:
    data = json.loads(Path(option("--resume-data")).read_text(encoding="utf-8"))
    progress("resuming", data["analysis"]["gameInfo"]["name"])
progress("agent_reasoning", "The play button is centered")
progress(
    "agent_step_detail",
    json.dumps({"stepNumber": 1, "toolName": "click", "input": "{}", "result": "ok", "durationMs": 12}),
)
shots = output / "agent-screenshots"
shots.mkdir(parents=True, exist_ok=True)
(shots / "step-1.jpg").write_bytes(b"jpeg")
progress("agent_screenshot", "agent-screenshots/step-1.jpg")
progress("analyzing", "Reading the page")
sys.stderr.write("debug: model warmed up\n")
if behavior == "hang":
    time.sleep(60)
failing_viewports = behavior.split(":", 1)[1].split(",") if behavior.startswith("fail:") else []
if (behavior == "fail" and not resuming) or viewport in failing_viewports:
    checkpoint = {"analysis": {"gameInfo": {"name": "Snake"}}}
    (output / "checkpoint_analyzed.json").write_text(json.dumps(checkpoint), encoding="utf-8")
    sys.stderr.write("quota exceeded for key sk-abcdefghijklmnopqrstuvwx\n")
    sys.exit(2)
flows_dir = output / "flows"
flows_dir.mkdir(parents=True, exist_ok=True)
(flows_dir / "start-game.yaml").write_text(
    "url: https://snake.test/play\nname: Start game\n---\n- takeScreenshot\n- back\n",
    encoding="utf-8",
)
print("scout finished")
result = {
    "pageMeta": {"title": "snake.test", "framework": "phaser"},
    "analysis": {
        "gameInfo": {"name": "Snake"},
        "scenarios": [{"name": "Start a round", "steps": [{"action": "click", "target": "Play"}]}],
    },
    "flows": [{"name": "Start game", "commands": ["takeScreenshot", "back"], "viewport": viewport}],
}
print(json.dumps(result))
'''


def write_fake_cli(directory: Path) -> Path:
    """Executable stand-in for the analysis CLI driven by ``FAKE_CLI_*`` variables."""
    path = directory / "fake-cli"
    path.write_text(f"#!{sys.executable}\n{FAKE_CLI_SCRIPT}", encoding="utf-8")
    path.chmod(0o755)
    return path


SETTINGS_PATH = Path(__file__).resolve().parents[1] / "config" / "settings.yaml"


def make_services(
    tmp_path: Path,
    *,
    env: dict[str, str] | None = None,
    page: FakePage | None = None,
    model: FakeModel | None = None,
) -> JobServices:
    """Job services on ``tmp_path`` wired to the fake CLI with settle delays removed."""
    cli = write_fake_cli(tmp_path)
    config = load_app_config(
        SETTINGS_PATH,
        env={},
        cli_overrides={
            "cli_path": str(cli),
            "data_dir": str(tmp_path / "data"),
            "flows_dir": str(tmp_path / "flows"),
            "db_path": str(tmp_path / "flowpilot.db"),
        },
    )
    for name in ("flow_settle_seconds", "scenario_settle_seconds", "back_delay_seconds", "action_delay_seconds"):
        setattr(config.executor, name, 0.0)
    fake_page = page or FakePage()

    async def page_factory(viewport: Viewport) -> FakePage:
        return fake_page

    process_env = {**os.environ, "PYTHONIOENCODING": "utf-8", **(env or {})}
    return JobServices.from_config(
        config,
        env=process_env,
        page_factory=page_factory,
        model_provider=lambda: model,
    )


async def settle(services: JobServices) -> None:
    """Wait for supervised jobs, including runs they launch on completion."""
    for _ in range(5):
        if not services.supervisor.active:
            return
        await services.supervisor.wait_all(timeout=30)
