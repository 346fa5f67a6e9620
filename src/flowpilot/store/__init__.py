"""Persistence exports."""

from flowpilot.store.flow_files import FlowFileStore, count_flow_files
from flowpilot.store.sqlite_store import INTERRUPTED_REASON, JobStore

__all__ = ["FlowFileStore", "INTERRUPTED_REASON", "JobStore", "count_flow_files"]
