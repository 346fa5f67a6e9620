"""Optional Langfuse tracing of jobs and their phases."""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Mapping, Protocol

from flowpilot.security.redaction import redact_mapping

LOGGER = logging.getLogger(__name__)

JOB_SPAN_NAME = "flowpilot-job"


class TracerProtocol(Protocol):
    """Tracer contract used by the orchestrator."""

    def start_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        input_payload: Any | None = None,
    ) -> None:
        """Open the job span."""

    def record_phase(
        self,
        *,
        job_id: str,
        phase: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        """Record a phase; ``status: running`` opens it, any other status closes it."""

    def finish_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        """Close the job span and any phases still open."""

    def flush(self) -> None:
        """Flush buffered events."""


class NoOpTracer:
    """Tracer used when Langfuse is not configured."""

    def start_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        input_payload: Any | None = None,
    ) -> None:
        del job_id, metadata, input_payload

    def record_phase(
        self,
        *,
        job_id: str,
        phase: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        del job_id, phase, metadata, output_payload

    def finish_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        del job_id, metadata, output_payload

    def flush(self) -> None:
        return


class LangfuseTracer:
    """Langfuse-backed tracer; every call is best effort."""

    def __init__(self, env: Mapping[str, str], *, client: Any | None = None) -> None:
        self._client: Any | None = client
        self._jobs: dict[str, Any] = {}
        self._phases: dict[tuple[str, str], Any] = {}
        if client is not None:
            return
        public_key = env.get("LANGFUSE_PUBLIC_KEY")
        secret_key = env.get("LANGFUSE_SECRET_KEY")
        if not public_key or not secret_key:
            return
        try:
            from langfuse import Langfuse
        except ImportError:
            LOGGER.debug("langfuse package not installed; tracing disabled.")
            return
        kwargs: dict[str, Any] = {"public_key": public_key, "secret_key": secret_key}
        host = env.get("LANGFUSE_BASE_URL") or env.get("LANGFUSE_HOST")
        if host:
            kwargs["host"] = host.rstrip("/")
        try:
            self._client = Langfuse(**kwargs)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to initialize Langfuse client: %s", exc)
            self._client = None

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _context(self, job_id: str) -> dict[str, str]:
        context = {"trace_id": _trace_id(job_id)}
        parent_id = getattr(self._jobs.get(job_id), "id", None)
        if isinstance(parent_id, str):
            context["parent_span_id"] = parent_id
        return context

    def start_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        input_payload: Any | None = None,
    ) -> None:
        if self._client is None:
            return
        try:
            stale = self._jobs.pop(job_id, None)
            if stale is not None:
                stale.end()
            self._jobs[job_id] = self._client.start_span(
                trace_context={"trace_id": _trace_id(job_id)},
                name=JOB_SPAN_NAME,
                input=redact_mapping(input_payload) if input_payload is not None else None,
                metadata=redact_mapping(metadata),
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Langfuse start_job failed: %s", exc)

    def record_phase(
        self,
        *,
        job_id: str,
        phase: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        if self._client is None:
            return
        key = (job_id, phase)
        clean_metadata = redact_mapping(metadata)
        clean_output = redact_mapping(output_payload) if output_payload is not None else None
        try:
            if str(metadata.get("status", "")).lower() == "running":
                self._phases[key] = self._client.start_span(
                    trace_context=self._context(job_id),
                    name=f"phase:{phase}",
                    metadata=clean_metadata,
                )
                return
            span = self._phases.pop(key, None)
            if span is None:
                span = self._client.start_span(
                    trace_context=self._context(job_id),
                    name=f"phase:{phase}",
                    metadata=clean_metadata,
                )
            span.update(output=clean_output, metadata=clean_metadata)
            span.end()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Langfuse record_phase failed: %s", exc)

    def finish_job(
        self,
        *,
        job_id: str,
        metadata: dict[str, Any],
        output_payload: Any | None = None,
    ) -> None:
        if self._client is None:
            return
        try:
            for key in [key for key in self._phases if key[0] == job_id]:
                self._phases.pop(key).end()
            span = self._jobs.pop(job_id, None)
            if span is None:
                return
            span.update(
                output=redact_mapping(output_payload) if output_payload is not None else None,
                metadata=redact_mapping(metadata),
            )
            span.end()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Langfuse finish_job failed: %s", exc)

    def flush(self) -> None:
        if self._client is None:
            return
        try:
            self._client.flush()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Langfuse flush failed: %s", exc)


def create_tracer(env: Mapping[str, str]) -> TracerProtocol:
    """Create Langfuse tracer if configured, else no-op tracer."""
    tracer = LangfuseTracer(env)
    if not tracer.enabled:
        return NoOpTracer()
    return tracer


def _trace_id(job_id: str) -> str:
    """Derive deterministic 32-char trace IDs from job IDs."""
    return hashlib.sha256(job_id.encode("utf-8")).hexdigest()[:32]
