"""Filesystem storage for generated flows and step screenshots."""

from __future__ import annotations

import base64
import binascii
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Mapping
from urllib.parse import quote

from flowpilot.errors import FlowPilotError
from flowpilot.flows.serializer import prepare_flow_text, write_generated_flows
from flowpilot.schemas.store_models import TestPlan

LOGGER = logging.getLogger(__name__)

FLOW_SUFFIXES = (".yaml", ".yml")

ResultLoader = Callable[[str], Mapping[str, Any] | None]


def is_flow_file(path: Path) -> bool:
    return path.is_file() and path.suffix in FLOW_SUFFIXES


def count_flow_files(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(1 for path in directory.iterdir() if is_flow_file(path))


class FlowFileStore:
    """Generated flows live under ``<flows_dir>/generated/<job_id>/``."""

    def __init__(self, flows_dir: Path, data_dir: Path) -> None:
        self.flows_dir = flows_dir
        self.data_dir = data_dir

    def generated_dir(self, job_id: str) -> Path:
        return self.flows_dir / "generated" / job_id

    def save_generated(self, job_id: str, source_dir: Path, *, prefix: str = "") -> int:
        """Copy every flow file found under ``source_dir``; return the count."""
        target = self.generated_dir(job_id)
        target.mkdir(parents=True, exist_ok=True)
        copied = 0
        name_prefix = f"{prefix}_" if prefix else ""
        for path in sorted(source_dir.rglob("*")):
            if not is_flow_file(path):
                continue
            try:
                shutil.copyfile(path, target / f"{name_prefix}{path.name}")
            except OSError as exc:
                LOGGER.warning("Could not copy generated flow %s: %s", path.name, exc)
                continue
            copied += 1
        return copied

    def regenerate(self, job_id: str, result: Mapping[str, Any]) -> list[Path]:
        """Rebuild flow files from a stored structured result."""
        flows = result.get("flows")
        if not isinstance(flows, list) or not flows:
            raise FlowPilotError(f"no flows in analysis result for {job_id}")
        written = write_generated_flows(
            [flow for flow in flows if isinstance(flow, dict)], self.generated_dir(job_id)
        )
        LOGGER.info("Regenerated %d flow files for %s", len(written), job_id)
        return written

    def prepare_run_dir(
        self,
        plan: TestPlan,
        target: Path,
        *,
        load_result: ResultLoader | None = None,
    ) -> Path:
        """Write the plan's flows into ``target`` ready for execution.

        Analysis-linked plans read the generated directory (rebuilt from the
        stored result when it is missing); others pick named templates.
        """
        target.mkdir(parents=True, exist_ok=True)
        if plan.analysis_id:
            sources = self._generated_sources(plan.analysis_id, load_result)
        else:
            wanted = set(plan.flow_names)
            sources = [
                path
                for path in sorted(self.flows_dir.rglob("*"))
                if is_flow_file(path)
                and "generated" not in path.relative_to(self.flows_dir).parts
                and path.stem in wanted
            ]
        copied = 0
        for path in sources:
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as exc:
                LOGGER.warning("Could not read flow %s: %s", path.name, exc)
                continue
            (target / path.name).write_text(
                prepare_flow_text(content, plan.variables), encoding="utf-8"
            )
            copied += 1
        if copied == 0:
            source = f"generated/{plan.analysis_id}" if plan.analysis_id else "templates"
            raise FlowPilotError(f"no flow files found in {source}")
        return target

    def _generated_sources(
        self, analysis_id: str, load_result: ResultLoader | None
    ) -> list[Path]:
        directory = self.generated_dir(analysis_id)
        if not directory.is_dir():
            LOGGER.info("Generated flows missing for %s, regenerating", analysis_id)
            result = load_result(analysis_id) if load_result is not None else None
            if not result:
                raise FlowPilotError(
                    f"generated flows missing and no stored result for {analysis_id}"
                )
            self.regenerate(analysis_id, result)
        return [path for path in sorted(directory.iterdir()) if is_flow_file(path)]

    def save_step_screenshot(
        self, test_id: str, flow_name: str, index: int, encoded: str
    ) -> Path | None:
        """Persist a base64 step screenshot; ``None`` when it cannot be decoded."""
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            LOGGER.warning("Skipping undecodable screenshot for %s step %d", flow_name, index)
            return None
        directory = self.data_dir / "test-screenshots" / test_id
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"flow-{quote(flow_name, safe='')}-step-{index}.jpg"
        path.write_bytes(data)
        return path

    def save_agent_screenshot(self, job_id: str, filename: str, data: bytes) -> Path:
        directory = self.data_dir / "screenshots" / job_id
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(data)
        return path
