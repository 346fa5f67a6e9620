"""Schema contract exports."""

from flowpilot.schemas.agent_models import (
    AgentMessage,
    AgentStepRecord,
    ImageBlock,
    ModelResponse,
    Scenario,
    ScenarioOutcome,
    ScenarioStep,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from flowpilot.schemas.enums import (
    JobKind,
    JobStatus,
    ProgressKind,
    ProviderType,
    ScenarioVerdict,
    StepStatus,
)
from flowpilot.schemas.flow_models import (
    Command,
    CommandListValue,
    Flow,
    FlowMetadata,
    ParametrizedCommand,
    RecordValue,
    ScalarValue,
    SimpleCommand,
)
from flowpilot.schemas.job_models import (
    AnalysisModules,
    AnalysisProfile,
    AnalysisRequest,
    Checkpoint,
    DeviceOutcome,
    FlowRunResult,
    RunningJob,
    StepResult,
    TestRunSummary,
    UnitResult,
    build_analysis_request,
)
from flowpilot.schemas.store_models import (
    AgentStepRow,
    AnalysisRecord,
    JobTransition,
    TestPlan,
)

__all__ = [
    "AgentMessage",
    "AgentStepRecord",
    "AgentStepRow",
    "AnalysisModules",
    "AnalysisProfile",
    "AnalysisRecord",
    "AnalysisRequest",
    "Checkpoint",
    "Command",
    "CommandListValue",
    "DeviceOutcome",
    "Flow",
    "FlowMetadata",
    "FlowRunResult",
    "ImageBlock",
    "JobKind",
    "JobStatus",
    "JobTransition",
    "ModelResponse",
    "ParametrizedCommand",
    "ProgressKind",
    "ProviderType",
    "RecordValue",
    "RunningJob",
    "ScalarValue",
    "Scenario",
    "ScenarioOutcome",
    "ScenarioStep",
    "ScenarioVerdict",
    "SimpleCommand",
    "StepResult",
    "StepStatus",
    "TestPlan",
    "TestRunSummary",
    "TextBlock",
    "ToolDefinition",
    "ToolResultBlock",
    "ToolUseBlock",
    "UnitResult",
    "build_analysis_request",
]
