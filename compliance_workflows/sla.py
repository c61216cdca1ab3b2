"""
SLA Tracking Module

Read-only evaluation of approval deadlines. An instance is due
``default_sla_hours`` after it was created; an ACTIVE step is due
``sla_hours`` after it was activated.

Status levels:
- ON_TRACK: less than the warning threshold of the window used
- WARNING: at or above the warning threshold (default 80%)
- BREACHED: past due
- CRITICAL: at least ``critical_hours`` past due (default 24)
- NONE: no deadline configured
"""

import logging
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum

from .instances import StepStatus, WorkflowInstance


class SlaStatus(Enum):
    """SLA status levels"""
    NONE = "NONE"
    ON_TRACK = "ON_TRACK"
    WARNING = "WARNING"
    BREACHED = "BREACHED"
    CRITICAL = "CRITICAL"

    @property
    def needs_attention(self) -> bool:
        return self not in (SlaStatus.NONE, SlaStatus.ON_TRACK)


_SEVERITY = [SlaStatus.NONE, SlaStatus.ON_TRACK, SlaStatus.WARNING, SlaStatus.BREACHED, SlaStatus.CRITICAL]


@dataclass
class SlaCalculation:
    """Deadline position of one window"""
    status: SlaStatus
    due_at: Optional[datetime] = None
    remaining_hours: Optional[float] = None
    percent_used: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'due_at': self.due_at.isoformat() if self.due_at else None,
            'remaining_hours': self.remaining_hours,
            'percent_used': self.percent_used
        }


@dataclass
class SlaReport:
    """SLA position of an instance and each of its ACTIVE steps"""
    instance_id: str
    entity_type: str
    entity_id: str
    instance: SlaCalculation
    steps: Dict[int, SlaCalculation] = field(default_factory=dict)

    @property
    def worst_status(self) -> SlaStatus:
        statuses = [self.instance.status] + [c.status for c in self.steps.values()]
        return max(statuses, key=_SEVERITY.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'status': self.worst_status.value,
            'instance': self.instance.to_dict(),
            'steps': {str(seq): calc.to_dict() for seq, calc in self.steps.items()}
        }


class SlaTracker:
    """Calculates SLA status for workflow instances"""

    def __init__(self, warning_threshold_percent: float = 80, critical_hours: float = 24):
        self.warning_threshold_percent = warning_threshold_percent
        self.critical_hours = critical_hours
        self.logger = logging.getLogger("compliance_workflows.sla")

    def calculate(self, started_at: Optional[datetime], due_at: Optional[datetime],
                  now: Optional[datetime] = None) -> SlaCalculation:
        """Classify a single [started_at, due_at] window"""
        if started_at is None or due_at is None:
            return SlaCalculation(status=SlaStatus.NONE)

        now = now or datetime.now(timezone.utc)
        total = (due_at - started_at).total_seconds()
        remaining_hours = (due_at - now).total_seconds() / 3600
        elapsed = (now - started_at).total_seconds()
        percent_used = min(200.0, max(0.0, elapsed / total * 100)) if total > 0 else 200.0

        if remaining_hours <= -self.critical_hours:
            status = SlaStatus.CRITICAL
        elif remaining_hours <= 0:
            status = SlaStatus.BREACHED
        elif percent_used >= self.warning_threshold_percent:
            status = SlaStatus.WARNING
        else:
            status = SlaStatus.ON_TRACK

        return SlaCalculation(
            status=status,
            due_at=due_at,
            remaining_hours=round(remaining_hours, 2),
            percent_used=round(percent_used, 1)
        )

    def evaluate(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> SlaReport:
        """
        Evaluate one instance

        Terminal instances report NONE throughout: their deadlines no longer apply.
        """
        now = now or datetime.now(timezone.utc)
        report = SlaReport(
            instance_id=instance.id,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            instance=SlaCalculation(status=SlaStatus.NONE)
        )
        if instance.is_terminal:
            return report

        report.instance = self.calculate(instance.created_at, instance.due_at, now)
        for step in instance.steps:
            if step.status != StepStatus.ACTIVE:
                continue
            step_due = None
            if step.sla_hours and step.activated_at:
                step_due = step.activated_at + timedelta(hours=step.sla_hours)
            report.steps[step.sequence] = self.calculate(step.activated_at, step_due, now)
        return report

    def scan(self, instances: Iterable[WorkflowInstance],
             now: Optional[datetime] = None) -> List[SlaReport]:
        """Reports for every open instance that is at risk or overdue, worst first"""
        now = now or datetime.now(timezone.utc)
        reports = []
        for instance in instances:
            if instance.is_terminal:
                continue
            report = self.evaluate(instance, now)
            if report.worst_status.needs_attention:
                reports.append(report)

        reports.sort(key=lambda r: _SEVERITY.index(r.worst_status), reverse=True)
        self.logger.info(f"SLA scan complete: {len(reports)} instances need attention")
        return reports
