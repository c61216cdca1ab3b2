"""
Workflow Instance Manager

Creates and mutates the live approval state of one concrete entity. Every
mutation of an instance, whether a start, cancel, decision or skip, goes
through ``WorkflowInstanceManager.mutate``, which holds the instance's
exclusive lock, re-reads the stored state, applies the change, commits the
instance together with its ledger events in one storage transaction, and only
then notifies.

Instance state machine::

    PENDING -> IN_PROGRESS -> APPROVED | REJECTED
    PENDING | IN_PROGRESS -> CANCELLED

APPROVED, REJECTED and CANCELLED are terminal.
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from enum import Enum

from .audit import AuditLedger
from .definitions import DefinitionStore, EntityType, WorkflowDefinition, coerce_entity_type
from .errors import ConflictError, InvalidStateError, NotFoundError, PersistenceError, WorkflowError
from .locking import InstanceLockRegistry
from .logging_config import log_action
from .notifications import NotificationDispatcher
from .storage import StorageInterface, StorageRecord, format_datetime, parse_datetime


class WorkflowStatus(Enum):
    """Status of a workflow instance"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED)


class StepStatus(Enum):
    """Status of one step within an instance"""
    LOCKED = "LOCKED"
    ACTIVE = "ACTIVE"
    SATISFIED = "SATISFIED"
    SKIPPED = "SKIPPED"


class DecisionAction(Enum):
    """Actions an approver can take on a step"""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    DELEGATE = "DELEGATE"


class InstanceNotFoundError(NotFoundError, InvalidStateError):
    """A missing instance: not found, and no operation is legal on it"""


@dataclass(frozen=True)
class Decision:
    """A single actor's immutable action on a step"""
    id: str
    actor_id: str
    action: DecisionAction
    step_sequence: int
    timestamp: datetime
    comment: Optional[str] = None
    delegate_to: Optional[str] = None
    on_behalf_of: Optional[str] = None  # principal a delegate acted for

    @property
    def principal(self) -> str:
        return self.on_behalf_of or self.actor_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'action': self.action.value,
            'step_sequence': self.step_sequence,
            'timestamp': self.timestamp.isoformat(),
            'comment': self.comment,
            'delegate_to': self.delegate_to,
            'on_behalf_of': self.on_behalf_of
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Decision':
        return cls(
            id=data['id'],
            actor_id=data['actor_id'],
            action=DecisionAction(data['action']),
            step_sequence=data['step_sequence'],
            timestamp=parse_datetime(data['timestamp']),
            comment=data.get('comment'),
            delegate_to=data.get('delegate_to'),
            on_behalf_of=data.get('on_behalf_of')
        )


@dataclass
class StepState:
    """Live state of one step template within an instance"""
    sequence: int
    status: StepStatus
    name: str = ""
    parallel: bool = False
    required_approvals: int = 1
    decisions: List[Decision] = field(default_factory=list)
    credited_members: List[str] = field(default_factory=list)
    delegations: Dict[str, str] = field(default_factory=dict)  # principal -> delegate
    sla_hours: Optional[int] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def approval_count(self) -> int:
        return len(self.credited_members)

    def standings_for(self, actor_id: str) -> List[str]:
        """
        Principals whose standing an actor holds on this step

        Standings delegated to the actor come first, in delegation order,
        followed by the actor's own unless they delegated it away. An actor
        who delegated and holds nothing else gets an empty list.
        """
        standings = [principal for principal, delegate in self.delegations.items()
                     if delegate == actor_id]
        if actor_id not in self.delegations:
            standings.append(actor_id)
        return standings

    def decided_principals(self) -> List[str]:
        """Principals that already approved or rejected this step"""
        return [d.principal for d in self.decisions
                if d.action in (DecisionAction.APPROVE, DecisionAction.REJECT)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'status': self.status.value,
            'name': self.name,
            'parallel': self.parallel,
            'required_approvals': self.required_approvals,
            'decisions': [d.to_dict() for d in self.decisions],
            'credited_members': list(self.credited_members),
            'delegations': dict(self.delegations),
            'sla_hours': self.sla_hours,
            'activated_at': format_datetime(self.activated_at),
            'completed_at': format_datetime(self.completed_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepState':
        return cls(
            sequence=data['sequence'],
            status=StepStatus(data['status']),
            name=data.get('name', ''),
            parallel=data.get('parallel', False),
            required_approvals=data.get('required_approvals', 1),
            decisions=[Decision.from_dict(d) for d in data.get('decisions', [])],
            credited_members=list(data.get('credited_members', [])),
            delegations=dict(data.get('delegations', {})),
            sla_hours=data.get('sla_hours'),
            activated_at=parse_datetime(data.get('activated_at')),
            completed_at=parse_datetime(data.get('completed_at'))
        )


@dataclass
class WorkflowInstance(StorageRecord):
    """The approval run for one (entity_type, entity_id)"""
    organization_id: str
    entity_type: EntityType
    entity_id: str
    definition_id: str
    definition_version: int
    status: WorkflowStatus
    initiated_by: str
    current_step_sequence: int = 0
    steps: List[StepState] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    due_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, sequence: int) -> Optional[StepState]:
        for step in self.steps:
            if step.sequence == sequence:
                return step
        return None

    def active_steps(self) -> List[StepState]:
        return [s for s in self.steps if s.status == StepStatus.ACTIVE]

    def decisions(self) -> List[Decision]:
        """All decisions across steps in timestamp order"""
        return sorted((d for s in self.steps for d in s.decisions), key=lambda d: d.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'definition_id': self.definition_id,
            'definition_version': self.definition_version,
            'status': self.status.value,
            'initiated_by': self.initiated_by,
            'current_step_sequence': self.current_step_sequence,
            'steps': [s.to_dict() for s in self.steps],
            'context': self.context,
            'completed_at': format_datetime(self.completed_at),
            'cancelled_by': self.cancelled_by,
            'cancel_reason': self.cancel_reason,
            'due_at': format_datetime(self.due_at),
            'revision': self.revision
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data['entity_type'] = EntityType(data['entity_type'])
        data['status'] = WorkflowStatus(data['status'])
        data['steps'] = [StepState.from_dict(s) for s in data.get('steps', [])]
        data['completed_at'] = parse_datetime(data.get('completed_at'))
        data['due_at'] = parse_datetime(data.get('due_at'))
        return super().from_dict(data)


class TransitionPlan:
    """
    Changes produced by one mutation, in the order they happened: ledger
    events to append at commit, and notifications to send after it.
    """

    def __init__(self, actor_id: str, now: datetime):
        self.actor_id = actor_id
        self.now = now
        self.events: List[Tuple[str, Any]] = []
        self.activated: List[StepState] = []
        self.completed: Optional[WorkflowStatus] = None

    def transition(self, from_status: Optional[WorkflowStatus], to_status: WorkflowStatus,
                   cause: str, **details) -> None:
        self.events.append(('transition', {
            'from_status': from_status.value if from_status else None,
            'to_status': to_status.value,
            'cause': cause,
            'details': details
        }))
        if to_status.is_terminal:
            self.completed = to_status

    def decision(self, decision: Decision) -> None:
        self.events.append(('decision', decision))

    def skip(self, step_sequence: int, reason: str) -> None:
        self.events.append(('skip', {'step_sequence': step_sequence, 'reason': reason}))

    @property
    def is_empty(self) -> bool:
        return not self.events


class WorkflowInstanceManager:
    """Owns and mutates workflow instances"""

    TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface, definitions: DefinitionStore,
                 ledger: Optional[AuditLedger] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 locks: Optional[InstanceLockRegistry] = None,
                 require_definition: bool = False):
        self.storage = storage
        self.definitions = definitions
        self.ledger = ledger or definitions.ledger
        self.notifier = notifier or NotificationDispatcher()
        self.locks = locks or definitions.locks
        self.require_definition = require_definition
        self.logger = logging.getLogger("compliance_workflows.instances")

    # Queries

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Get an instance by id; raises InstanceNotFoundError"""
        data = self.storage.load(self.TABLE, instance_id)
        if not data:
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found",
                                        {'instance_id': instance_id})
        return WorkflowInstance.from_dict(data)

    def list_instances(self, entity_type: Union[EntityType, str], entity_id: str) -> List[WorkflowInstance]:
        """Every run for one entity, newest first"""
        entity_type = coerce_entity_type(entity_type)
        rows = self.storage.find(self.TABLE, {'entity_type': entity_type.value, 'entity_id': entity_id})
        instances = [WorkflowInstance.from_dict(r) for r in rows]
        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def list_open_instances(self, organization_id: str) -> List[WorkflowInstance]:
        """Non-terminal instances of one organization, oldest first"""
        rows = self.storage.find(self.TABLE, {'organization_id': organization_id})
        instances = [WorkflowInstance.from_dict(r) for r in rows]
        return sorted((i for i in instances if not i.is_terminal), key=lambda i: i.created_at)

    def get_status(self, entity_type: Union[EntityType, str], entity_id: str) -> Optional[WorkflowInstance]:
        """
        Current approval state of an entity: its non-terminal instance if one
        exists, otherwise its most recent instance, otherwise None.
        """
        instances = self.list_instances(entity_type, entity_id)
        for instance in instances:
            if not instance.is_terminal:
                return instance
        return instances[0] if instances else None

    # Lifecycle

    def start(self, entity_type: Union[EntityType, str], entity_id: str, organization_id: str,
              initiator_id: str, context: Optional[Dict[str, Any]] = None,
              hold: bool = False) -> Optional[WorkflowInstance]:
        """
        Start approval for an entity

        Args:
            entity_type: Kind of entity
            entity_id: Entity id within its kind
            organization_id: Owning organization
            initiator_id: Actor requesting approval
            context: Opaque caller data stored with the instance
            hold: Create in PENDING with no active step; see activate()

        Returns:
            The new instance, or None when the organization has no definition
            for the entity type (no approval required)

        Raises:
            ConflictError: if the entity already has a non-terminal instance
            NotFoundError: if no definition exists and require_definition is set
        """
        entity_type = coerce_entity_type(entity_type)

        with self.locks.entity(entity_type.value, entity_id):
            existing = self.get_status(entity_type, entity_id)
            if existing and not existing.is_terminal:
                raise ConflictError(
                    f"{entity_type.value} {entity_id} already has workflow {existing.id} in progress",
                    {'instance_id': existing.id, 'status': existing.status.value}
                )

            try:
                definition = self.definitions.get_definition(organization_id, entity_type)
            except NotFoundError:
                if self.require_definition:
                    raise
                self.logger.info(f"No definition for {entity_type.value} in {organization_id}; "
                                 f"{entity_id} needs no approval")
                return None

            now = datetime.now(timezone.utc)
            instance = self._materialize(definition, entity_id, initiator_id, context, now)
            plan = TransitionPlan(initiator_id, now)

            if hold:
                instance.status = WorkflowStatus.PENDING
                plan.transition(None, WorkflowStatus.PENDING, 'started_on_hold')
            else:
                instance.status = WorkflowStatus.IN_PROGRESS
                plan.transition(None, WorkflowStatus.IN_PROGRESS, 'started')
                self._activate_step(instance, instance.step(0), plan)

            # Decisions on the new instance wait until its activation is delivered
            with self.locks.instance(instance.id):
                self._commit(instance, plan, expected_revision=None)
                self._notify(instance, plan)
            return instance

    def activate(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """
        Release a PENDING instance: status -> IN_PROGRESS and the first step activates

        Raises:
            InvalidStateError: if the instance is not PENDING
        """
        def apply(instance: WorkflowInstance, definition: WorkflowDefinition, plan: TransitionPlan):
            if instance.status != WorkflowStatus.PENDING:
                raise InvalidStateError(
                    f"Workflow {instance.id} is {instance.status.value}, not PENDING",
                    {'instance_id': instance.id, 'status': instance.status.value}
                )
            instance.status = WorkflowStatus.IN_PROGRESS
            plan.transition(WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS, 'activated')
            self._activate_step(instance, instance.step(0), plan)

        return self.mutate(instance_id, actor_id, apply)

    def cancel(self, instance_id: str, actor_id: str, reason: str) -> WorkflowInstance:
        """
        Cancel a PENDING or IN_PROGRESS instance

        Cancelling an already-cancelled instance returns it unchanged.

        Raises:
            InvalidStateError: if the instance is APPROVED or REJECTED
        """
        def apply(instance: WorkflowInstance, definition: WorkflowDefinition, plan: TransitionPlan):
            if instance.status == WorkflowStatus.CANCELLED:
                return
            if instance.is_terminal:
                raise InvalidStateError(
                    f"Workflow {instance.id} is already {instance.status.value}",
                    {'instance_id': instance.id, 'status': instance.status.value}
                )
            instance.cancelled_by = actor_id
            instance.cancel_reason = reason
            self.finish(instance, WorkflowStatus.CANCELLED, plan, 'cancelled', reason=reason)

        return self.mutate(instance_id, actor_id, apply)

    # Mutation path

    def mutate(self, instance_id: str, actor_id: str,
               apply: Callable[[WorkflowInstance, WorkflowDefinition, TransitionPlan], None]) -> WorkflowInstance:
        """
        Apply one change to an instance under its exclusive lock

        ``apply`` receives freshly loaded state and either raises (nothing is
        written) or mutates the instance and records what it did on the plan.
        """
        with self.locks.instance(instance_id):
            instance = self.get_instance(instance_id)
            definition = self.definitions.get_definition_version(
                instance.organization_id, instance.entity_type, instance.definition_version
            )
            plan = TransitionPlan(actor_id, datetime.now(timezone.utc))
            expected_revision = instance.revision

            apply(instance, definition, plan)
            if plan.is_empty:
                return instance

            self._commit(instance, plan, expected_revision)
            self._notify(instance, plan)
            return instance

    def complete_step(self, instance: WorkflowInstance, step: StepState,
                      status: StepStatus, plan: TransitionPlan) -> None:
        """Mark a step SATISFIED or SKIPPED and activate the next one, or approve the instance"""
        step.status = status
        step.completed_at = plan.now

        next_step = instance.step(step.sequence + 1)
        if next_step:
            self._activate_step(instance, next_step, plan)
        else:
            self.finish(instance, WorkflowStatus.APPROVED, plan, 'all_steps_satisfied')

    def finish(self, instance: WorkflowInstance, status: WorkflowStatus,
               plan: TransitionPlan, cause: str, **details) -> None:
        """Move the instance to a terminal status"""
        previous = instance.status
        instance.status = status
        instance.completed_at = plan.now
        plan.transition(previous, status, cause, **details)

    # Private helper methods

    def _materialize(self, definition: WorkflowDefinition, entity_id: str, initiator_id: str,
                     context: Optional[Dict[str, Any]], now: datetime) -> WorkflowInstance:
        steps = [
            StepState(
                sequence=template.sequence,
                status=StepStatus.LOCKED,
                name=template.name,
                parallel=template.parallel,
                required_approvals=template.threshold,
                sla_hours=template.sla_hours
            )
            for template in definition.steps
        ]
        due_at = now + timedelta(hours=definition.default_sla_hours) if definition.default_sla_hours else None

        return WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=definition.organization_id,
            entity_type=definition.entity_type,
            entity_id=entity_id,
            definition_id=definition.id,
            definition_version=definition.version,
            status=WorkflowStatus.PENDING,
            initiated_by=initiator_id,
            steps=steps,
            context=context or {},
            due_at=due_at
        )

    def _activate_step(self, instance: WorkflowInstance, step: StepState, plan: TransitionPlan) -> None:
        step.status = StepStatus.ACTIVE
        step.activated_at = plan.now
        instance.current_step_sequence = step.sequence
        plan.activated.append(step)

    def _commit(self, instance: WorkflowInstance, plan: TransitionPlan,
                expected_revision: Optional[int]) -> None:
        """Write the instance and its ledger events atomically"""
        try:
            with self.storage.atomic():
                if expected_revision is not None:
                    stored = self.storage.load(self.TABLE, instance.id)
                    if not stored or stored.get('revision') != expected_revision:
                        raise PersistenceError(
                            f"Workflow {instance.id} was modified concurrently",
                            {'instance_id': instance.id, 'expected_revision': expected_revision}
                        )
                instance.revision += 1
                instance.updated_at = plan.now

                if expected_revision is None:
                    self.storage.insert(self.TABLE, instance.id, instance.to_dict())
                else:
                    self.storage.save(self.TABLE, instance.id, instance.to_dict())

                for kind, payload in plan.events:
                    if kind == 'transition':
                        self.ledger.record_transition(
                            instance.id, payload['from_status'], payload['to_status'],
                            payload['cause'], actor_id=plan.actor_id, timestamp=plan.now,
                            details=payload['details']
                        )
                    elif kind == 'decision':
                        self.ledger.record_decision(instance.id, payload)
                    else:
                        self.ledger.record_step_skipped(
                            instance.id, payload['step_sequence'], plan.actor_id,
                            payload['reason'], timestamp=plan.now
                        )
        except WorkflowError:
            raise
        except Exception as exc:
            self.logger.error(f"Commit failed for workflow {instance.id}: {exc}")
            raise PersistenceError(f"Could not commit workflow {instance.id}: {exc}",
                                   {'instance_id': instance.id}) from exc

        for kind, payload in plan.events:
            if kind == 'transition':
                log_action(
                    self.logger, "info",
                    f"Workflow {instance.id} {payload['from_status'] or 'NEW'} -> {payload['to_status']}",
                    actor_id=plan.actor_id, event=payload['cause'],
                    instance=instance, revision=instance.revision
                )

    def _notify(self, instance: WorkflowInstance, plan: TransitionPlan) -> None:
        for step in plan.activated:
            self.notifier.step_activated(instance, step)
        if plan.completed is not None:
            self.notifier.instance_completed(instance, plan.completed)
