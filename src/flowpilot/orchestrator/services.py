"""Shared collaborators wired once per process."""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping

from flowpilot.browser.playwright_page import PlaywrightPage
from flowpilot.browser.protocol import BrowserPage
from flowpilot.browser.viewports import Viewport
from flowpilot.cancellation import CancellationToken
from flowpilot.config.model_factory import ModelFactory
from flowpilot.config.models import AppConfig
from flowpilot.llm.clients import ModelClient
from flowpilot.observability.progress_hub import ProgressHub
from flowpilot.observability.tracing import NoOpTracer, TracerProtocol, create_tracer
from flowpilot.orchestrator.process_runner import ProcessRunner
from flowpilot.orchestrator.registry import ProcessRegistry, RunningJobTracker
from flowpilot.orchestrator.slots import SlotRegistry
from flowpilot.orchestrator.supervisor import TaskSupervisor
from flowpilot.resilience.retry import RetryExecutor, RetryPolicy
from flowpilot.store.flow_files import FlowFileStore
from flowpilot.store.sqlite_store import JobStore

LOGGER = logging.getLogger(__name__)

PageFactory = Callable[[Viewport], Awaitable[BrowserPage]]
ModelProvider = Callable[[], ModelClient | None]


def new_job_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class JobServices:
    """Everything a job needs; tests swap individual members for fakes."""

    config: AppConfig
    store: JobStore
    files: FlowFileStore
    hub: ProgressHub
    tracker: RunningJobTracker
    processes: ProcessRegistry
    slots: SlotRegistry
    supervisor: TaskSupervisor
    runner: ProcessRunner
    retry: RetryExecutor
    page_factory: PageFactory
    model_provider: ModelProvider
    tracer: TracerProtocol = field(default_factory=NoOpTracer)
    shutdown: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        env: Mapping[str, str] | None = None,
        page_factory: PageFactory | None = None,
        model_provider: ModelProvider | None = None,
    ) -> JobServices:
        active_env = dict(os.environ if env is None else env)
        orchestrator = config.orchestrator
        processes = ProcessRegistry(
            hint_cooldown_seconds=orchestrator.hint_cooldown_seconds,
            hint_max_chars=orchestrator.hint_max_chars,
        )
        factory = ModelFactory(config)
        profile_name = config.agent.provider_profile
        return cls(
            config=config,
            store=JobStore(config.paths.db_path),
            files=FlowFileStore(config.paths.flows_dir, config.paths.data_dir),
            hub=ProgressHub(queue_size=orchestrator.subscriber_queue_size),
            tracker=RunningJobTracker(log_limit=orchestrator.running_log_limit),
            processes=processes,
            slots=SlotRegistry(queue_wait_seconds=orchestrator.queue_wait_seconds),
            supervisor=TaskSupervisor(),
            runner=ProcessRunner(orchestrator, processes=processes, env=active_env),
            retry=RetryExecutor(
                RetryPolicy(
                    max_attempts=config.retries.max_attempts,
                    backoff_seconds=config.retries.backoff_seconds,
                    jitter_seconds=config.retries.jitter_seconds,
                )
            ),
            page_factory=page_factory or PlaywrightPage.launch,
            model_provider=model_provider
            or (lambda: factory.try_create_client(profile_name=profile_name, env=active_env)),
            tracer=create_tracer(active_env),
        )

    async def shutdown_now(self, reason: str = "server shutting down") -> None:
        """Refuse queued work, cancel running jobs and flush tracing."""
        self.slots.shutdown()
        self.shutdown.cancel(reason)
        await self.supervisor.wait_all(timeout=10)
        await self.supervisor.cancel_all()
        self.tracer.flush()

    def recover(self) -> list[str]:
        """Fail jobs a previous process left running."""
        recovered = self.store.recover_interrupted()
        if recovered:
            LOGGER.warning("Marked %d interrupted jobs as failed", len(recovered))
        return recovered

    async def sweep_stale_jobs(self) -> None:
        """Drop running-job entries older than the stale age until shutdown."""
        settings = self.config.orchestrator
        while not self.shutdown.cancelled:
            if not await self.shutdown.sleep(settings.stale_sweep_seconds):
                return
            removed = self.tracker.sweep_stale(settings.stale_job_seconds)
            if removed:
                LOGGER.info("Removed %d stale running-job entries", len(removed))
