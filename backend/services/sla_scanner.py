"""
SLA scanner: finds company products that have sat in a stage too long.

The scanner reads the projected rows to pick candidates and then goes through
the command layer, issuing RecordSLAWarning / RecordSLABreach as a system
actor. It never writes read models itself. The state machine records each
warning and breach at most once per stage entry, so running the scan again
(or concurrently) emits nothing new; rows whose read model is behind the log
simply come back as no-ops.

Run it on a schedule, then let the projector pick up the new events.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from domain.enums import ActorType, LifecyclePhase, ProcessRunStatus
from domain.events import Actor, ensure_utc
from models import CompanyProductReadModel
from services.command_service import CommandService

logger = logging.getLogger(__name__)

SCANNER_ACTOR = Actor(type=ActorType.SYSTEM, id="sla_scanner")


@dataclass
class ScanResult:
    scanned: int = 0
    detected: int = 0
    events_emitted: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "scanned": self.scanned,
            "detected": self.detected,
            "events_emitted": self.events_emitted,
            "errors": self.errors,
            "duration": round(self.duration, 4),
        }


class SLAScanner:
    """Emits SLA warnings and breaches for rows past their stage thresholds."""

    def __init__(self, session_factory: sessionmaker, commands: Optional[CommandService] = None):
        self.session_factory = session_factory
        self.commands = commands or CommandService(session_factory)

    # ------------------------------------------------------------------
    # Candidate queries
    # ------------------------------------------------------------------
    def _open_rows(self, session):
        return session.query(CompanyProductReadModel).filter(
            CompanyProductReadModel.status == ProcessRunStatus.OPEN,
            CompanyProductReadModel.current_stage_id.isnot(None),
            or_(
                CompanyProductReadModel.phase.is_(None),
                CompanyProductReadModel.phase != LifecyclePhase.CHURNED,
            ),
        )

    def _warning_candidates(self, now) -> tuple[int, list[tuple]]:
        with self.session_factory() as session:
            query = self._open_rows(session).filter(
                CompanyProductReadModel.stage_sla_warning_at.isnot(None),
                CompanyProductReadModel.is_sla_warning.is_(False),
                CompanyProductReadModel.is_sla_breached.is_(False),
            )
            rows = query.all()
            candidates = []
            for row in rows:
                if ensure_utc(row.stage_sla_warning_at) > now:
                    continue
                deadline = ensure_utc(row.stage_sla_deadline)
                if deadline is not None and deadline < now:
                    # Past the deadline: the breach scan handles it
                    continue
                candidates.append(_identity(row))
            return len(rows), candidates

    def _breach_candidates(self, now) -> tuple[int, list[tuple]]:
        with self.session_factory() as session:
            rows = self._open_rows(session).filter(
                CompanyProductReadModel.stage_sla_deadline.isnot(None),
                CompanyProductReadModel.is_sla_breached.is_(False),
            ).all()
            candidates = [_identity(row) for row in rows if ensure_utc(row.stage_sla_deadline) < now]
            return len(rows), candidates

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    def scan_warnings(self) -> ScanResult:
        return self._scan("warning", self._warning_candidates, self.commands.record_sla_warning)

    def scan_breaches(self) -> ScanResult:
        return self._scan("breach", self._breach_candidates, self.commands.record_sla_breach)

    def run_full_scan(self) -> dict[str, ScanResult]:
        """Warnings first, so a row crossing both thresholds ends up breached."""
        return {"warnings": self.scan_warnings(), "breaches": self.scan_breaches()}

    def _scan(self, kind: str, find_candidates, record) -> ScanResult:
        started = time.monotonic()
        now = ensure_utc(self.commands.clock())
        scanned, candidates = find_candidates(now)
        result = ScanResult(scanned=scanned, detected=len(candidates))

        for company_product_id, company_id, product_id, stage_id in candidates:
            outcome = record(
                company_product_id=company_product_id,
                company_id=company_id,
                product_id=product_id,
                stage_id=stage_id,
                actor=SCANNER_ACTOR,
            )
            if not outcome.success:
                result.errors.append(f"{company_product_id}: {outcome.error}")
                logger.error(f"SLA {kind} for {company_product_id} failed: {outcome.error}")
            elif not outcome.noop:
                result.events_emitted += 1

        result.duration = time.monotonic() - started
        logger.info(
            f"SLA {kind} scan: {result.scanned} scanned, {result.detected} detected, "
            f"{result.events_emitted} emitted, {len(result.errors)} error(s)"
        )
        return result


def _identity(row: CompanyProductReadModel) -> tuple:
    return (row.company_product_id, row.company_id, row.product_id, row.current_stage_id)

