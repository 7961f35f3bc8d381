"""
domain/process.py — Read-only process and stage definitions.

Processes and their ordered stages are reference data owned by product
configuration. The state machine only looks them up; it never changes them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from domain.enums import ProcessStatus


@dataclass(frozen=True)
class StageDefinition:
    id: str
    process_id: str
    name: str
    stage_order: int
    is_terminal: bool = False
    terminal_type: Optional[str] = None
    sla_days: Optional[int] = None
    sla_warning_days: Optional[int] = None


@dataclass(frozen=True)
class ProcessDefinition:
    id: str
    product_id: str
    process_type: str
    name: str
    version: int = 1
    status: str = ProcessStatus.PUBLISHED


class ProcessCatalog:
    """Lookup over a snapshot of process and stage definitions."""

    def __init__(
        self,
        processes: Iterable[ProcessDefinition] = (),
        stages: Iterable[StageDefinition] = (),
    ):
        self._processes = {p.id: p for p in processes}
        self._stages = {s.id: s for s in stages}

    def get_process(self, process_id: Optional[str]) -> Optional[ProcessDefinition]:
        if not process_id:
            return None
        return self._processes.get(process_id)

    def get_stage(self, stage_id: Optional[str]) -> Optional[StageDefinition]:
        if not stage_id:
            return None
        return self._stages.get(stage_id)

    def stages_for(self, process_id: str) -> list[StageDefinition]:
        return sorted(
            (s for s in self._stages.values() if s.process_id == process_id),
            key=lambda s: s.stage_order,
        )

    def first_stage(self, process_id: str) -> Optional[StageDefinition]:
        """Lowest-ordered non-terminal stage of a process."""
        for stage in self.stages_for(process_id):
            if not stage.is_terminal:
                return stage
        return None

    def terminal_stage(self, process_id: str, terminal_type: str) -> Optional[StageDefinition]:
        for stage in self.stages_for(process_id):
            if stage.is_terminal and stage.terminal_type == terminal_type:
                return stage
        return None

    def default_process(self, product_id: str, process_type: str) -> Optional[ProcessDefinition]:
        """Latest published process of a type for a product."""
        candidates = [
            p for p in self._processes.values()
            if p.product_id == product_id
            and p.process_type == process_type
            and p.status == ProcessStatus.PUBLISHED
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.version)
