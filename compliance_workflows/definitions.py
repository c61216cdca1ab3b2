"""
Workflow Definition Store

Holds, per organization and per entity kind, the ordered approval steps an
entity must pass. Definitions are versioned: publishing never rewrites an
existing version, it writes version N+1 and retires the previous latest
version. Instances pin the version they were started on, so in-flight
approvals are unaffected by later edits.
"""

import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Any, Union
from enum import Enum

from .audit import AuditLedger, HistoryEventKind
from .errors import NotFoundError, ValidationError
from .identity import Actor
from .locking import InstanceLockRegistry
from .storage import StorageInterface, StorageRecord


class EntityType(Enum):
    """Kinds of entity that can be put through approval"""
    CASE = "CASE"
    CASE_CLOSURE = "CASE_CLOSURE"
    INVESTIGATION = "INVESTIGATION"
    DISCLOSURE = "DISCLOSURE"
    POLICY = "POLICY"
    CAMPAIGN = "CAMPAIGN"


def coerce_entity_type(entity_type: Union[EntityType, str]) -> EntityType:
    """Accept an EntityType or its string value"""
    if isinstance(entity_type, EntityType):
        return entity_type
    try:
        return EntityType(str(entity_type).upper())
    except ValueError:
        raise ValidationError(f"Unknown entity type: {entity_type}",
                              {'entity_type': entity_type})


@dataclass(frozen=True)
class ApproverRule:
    """
    Who may act on a step.

    An actor qualifies if listed in ``user_ids`` or holding any of ``roles``.
    On a parallel step every listed user and every listed role is a group
    member; ``required_approvals`` (N) is how many members must approve.
    """
    roles: FrozenSet[str] = field(default_factory=frozenset)
    user_ids: FrozenSet[str] = field(default_factory=frozenset)
    required_approvals: Optional[int] = None

    @classmethod
    def for_roles(cls, *roles: str, required_approvals: Optional[int] = None) -> 'ApproverRule':
        return cls(roles=frozenset(roles), required_approvals=required_approvals)

    @classmethod
    def for_users(cls, *user_ids: str, required_approvals: Optional[int] = None) -> 'ApproverRule':
        return cls(user_ids=frozenset(user_ids), required_approvals=required_approvals)

    def is_satisfied_by(self, actor: Optional[Actor]) -> bool:
        """Check whether an actor qualifies under this rule"""
        if actor is None or not actor.is_active:
            return False
        return actor.actor_id in self.user_ids or actor.has_any_role(self.roles)

    def members(self) -> List[str]:
        """Member keys of a parallel group"""
        return sorted([f"user:{u}" for u in self.user_ids] + [f"role:{r}" for r in self.roles])

    def member_keys_for(self, actor: Actor) -> List[str]:
        """Member keys an actor may credit with an approval"""
        keys = []
        if actor.actor_id in self.user_ids:
            keys.append(f"user:{actor.actor_id}")
        keys.extend(f"role:{r}" for r in sorted(self.roles & actor.roles))
        return keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            'roles': sorted(self.roles),
            'user_ids': sorted(self.user_ids),
            'required_approvals': self.required_approvals
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApproverRule':
        return cls(
            roles=frozenset(data.get('roles', [])),
            user_ids=frozenset(data.get('user_ids', [])),
            required_approvals=data.get('required_approvals')
        )


@dataclass(frozen=True)
class StepTemplate:
    """Definition of a single approval step"""
    sequence: int
    approver_rule: ApproverRule
    parallel: bool = False
    name: str = ""
    can_skip: bool = False
    sla_hours: Optional[int] = None

    @property
    def threshold(self) -> int:
        """Approvals needed to satisfy the step"""
        if not self.parallel:
            return 1
        return self.approver_rule.required_approvals or len(self.approver_rule.members())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence': self.sequence,
            'approver_rule': self.approver_rule.to_dict(),
            'parallel': self.parallel,
            'name': self.name,
            'can_skip': self.can_skip,
            'sla_hours': self.sla_hours
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepTemplate':
        return cls(
            sequence=data['sequence'],
            approver_rule=ApproverRule.from_dict(data['approver_rule']),
            parallel=data.get('parallel', False),
            name=data.get('name', ''),
            can_skip=data.get('can_skip', False),
            sla_hours=data.get('sla_hours')
        )


@dataclass
class WorkflowDefinition(StorageRecord):
    """One version of an organization's approval definition for an entity kind"""
    organization_id: str
    entity_type: EntityType
    version: int
    name: str
    steps: List[StepTemplate]
    description: str = ""
    is_active: bool = True
    created_by: str = ""
    source_version: Optional[int] = None
    default_sla_hours: Optional[int] = None

    def step(self, sequence: int) -> Optional[StepTemplate]:
        for step in self.steps:
            if step.sequence == sequence:
                return step
        return None

    @property
    def last_sequence(self) -> int:
        return max(step.sequence for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'entity_type': self.entity_type.value,
            'version': self.version,
            'name': self.name,
            'steps': [step.to_dict() for step in self.steps],
            'description': self.description,
            'is_active': self.is_active,
            'created_by': self.created_by,
            'source_version': self.source_version,
            'default_sla_hours': self.default_sla_hours
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        data['entity_type'] = EntityType(data['entity_type'])
        data['steps'] = [StepTemplate.from_dict(s) for s in data.get('steps', [])]
        return super().from_dict(data)


def validate_steps(steps: List[StepTemplate]) -> None:
    """
    Validate a step list

    Raises:
        ValidationError: if there are no steps, sequences are not unique and
            contiguous from 0, or an approver rule is malformed
    """
    if not steps:
        raise ValidationError("Workflow must have at least one step")

    sequences = [step.sequence for step in steps]
    if len(set(sequences)) != len(sequences):
        raise ValidationError("Step sequences must be unique", {'sequences': sequences})

    if sorted(sequences) != list(range(len(sequences))):
        raise ValidationError("Step sequences must be contiguous starting at 0",
                              {'sequences': sequences})

    for step in steps:
        rule = step.approver_rule
        if step.sla_hours is not None and step.sla_hours <= 0:
            raise ValidationError(f"Step {step.sequence}: sla_hours must be positive",
                                  {'sequence': step.sequence})
        if not rule.roles and not rule.user_ids:
            raise ValidationError(f"Step {step.sequence} has no approvers",
                                  {'sequence': step.sequence})
        if rule.required_approvals is None:
            continue
        if not step.parallel and rule.required_approvals != 1:
            raise ValidationError(f"Step {step.sequence}: required_approvals applies to parallel steps only",
                                  {'sequence': step.sequence})
        if not 1 <= rule.required_approvals <= len(rule.members()):
            raise ValidationError(
                f"Step {step.sequence}: required_approvals must be between 1 and {len(rule.members())}",
                {'sequence': step.sequence, 'required_approvals': rule.required_approvals}
            )


class DefinitionStore:
    """Versioned store of workflow definitions"""

    TABLE = "workflow_definitions"

    def __init__(self, storage: StorageInterface, ledger: Optional[AuditLedger] = None,
                 locks: Optional[InstanceLockRegistry] = None):
        self.storage = storage
        self.ledger = ledger or AuditLedger(storage)
        self.locks = locks or InstanceLockRegistry()
        self.logger = logging.getLogger("compliance_workflows.definitions")

    def _versions(self, organization_id: str, entity_type: EntityType) -> List[WorkflowDefinition]:
        rows = self.storage.find(self.TABLE, {
            'organization_id': organization_id,
            'entity_type': entity_type.value
        })
        return sorted((WorkflowDefinition.from_dict(r) for r in rows), key=lambda d: d.version)

    def publish_definition(self, organization_id: str, entity_type: Union[EntityType, str],
                           steps: Iterable[StepTemplate], created_by: str,
                           name: Optional[str] = None, description: str = "",
                           default_sla_hours: Optional[int] = None) -> WorkflowDefinition:
        """
        Publish a new definition version

        The previous latest version is retired (is_active=False) but its steps
        are never touched, so instances pinned to it keep resolving it.

        Returns:
            The newly written WorkflowDefinition
        """
        entity_type = coerce_entity_type(entity_type)
        steps = sorted(steps, key=lambda s: s.sequence)
        validate_steps(steps)
        if default_sla_hours is not None and default_sla_hours <= 0:
            raise ValidationError("default_sla_hours must be positive")

        with self.locks.definition(organization_id, entity_type.value):
            versions = self._versions(organization_id, entity_type)
            latest = versions[-1] if versions else None
            version = latest.version + 1 if latest else 1
            now = datetime.now(timezone.utc)

            definition = WorkflowDefinition(
                id=f"{organization_id}:{entity_type.value}:v{version}",
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                entity_type=entity_type,
                version=version,
                name=name or f"{entity_type.value.replace('_', ' ').title()} Approval",
                steps=steps,
                description=description,
                is_active=True,
                created_by=created_by,
                source_version=latest.version if latest else None,
                default_sla_hours=default_sla_hours
            )

            with self.storage.atomic():
                if latest and latest.is_active:
                    latest.is_active = False
                    latest.updated_at = now
                    self.storage.save(self.TABLE, latest.id, latest.to_dict())
                self.storage.insert(self.TABLE, definition.id, definition.to_dict())
                self.ledger.record_definition_event(
                    HistoryEventKind.DEFINITION_PUBLISHED,
                    f"{organization_id}:{entity_type.value}",
                    created_by,
                    {'definition_id': definition.id, 'version': version,
                     'steps': len(steps)}
                )

        self.logger.info(f"Published {entity_type.value} definition v{version} for {organization_id}")
        return definition

    def get_definition(self, organization_id: str,
                       entity_type: Union[EntityType, str]) -> WorkflowDefinition:
        """
        Get the latest active version

        Raises:
            NotFoundError: if the organization has no active definition for the entity type
        """
        entity_type = coerce_entity_type(entity_type)
        versions = self._versions(organization_id, entity_type)
        if not versions or not versions[-1].is_active:
            raise NotFoundError(
                f"No active workflow definition for {entity_type.value} in {organization_id}",
                {'organization_id': organization_id, 'entity_type': entity_type.value}
            )
        return versions[-1]

    def get_definition_version(self, organization_id: str, entity_type: Union[EntityType, str],
                               version: int) -> WorkflowDefinition:
        """
        Get a pinned version, active or not

        Raises:
            NotFoundError: if that version does not exist
        """
        entity_type = coerce_entity_type(entity_type)
        data = self.storage.load(self.TABLE, f"{organization_id}:{entity_type.value}:v{version}")
        if not data:
            raise NotFoundError(
                f"Workflow definition {entity_type.value} v{version} not found in {organization_id}",
                {'organization_id': organization_id, 'entity_type': entity_type.value,
                 'version': version}
            )
        return WorkflowDefinition.from_dict(data)

    def deactivate_definition(self, organization_id: str, entity_type: Union[EntityType, str],
                              actor_id: str) -> WorkflowDefinition:
        """
        Retire the latest version so no new approvals are required

        Raises:
            NotFoundError: if there is no active definition
        """
        entity_type = coerce_entity_type(entity_type)
        with self.locks.definition(organization_id, entity_type.value):
            definition = self.get_definition(organization_id, entity_type)
            definition.is_active = False
            definition.updated_at = datetime.now(timezone.utc)

            with self.storage.atomic():
                self.storage.save(self.TABLE, definition.id, definition.to_dict())
                self.ledger.record_definition_event(
                    HistoryEventKind.DEFINITION_DEACTIVATED,
                    f"{organization_id}:{entity_type.value}",
                    actor_id,
                    {'definition_id': definition.id, 'version': definition.version}
                )

        self.logger.info(f"Deactivated {entity_type.value} definition v{definition.version} for {organization_id}")
        return definition

    def list_definitions(self, organization_id: str,
                         entity_type: Optional[Union[EntityType, str]] = None) -> List[WorkflowDefinition]:
        """List every version for an organization, optionally for one entity type"""
        filters = {'organization_id': organization_id}
        if entity_type is not None:
            filters['entity_type'] = coerce_entity_type(entity_type).value
        definitions = [WorkflowDefinition.from_dict(r) for r in self.storage.find(self.TABLE, filters)]
        return sorted(definitions, key=lambda d: (d.entity_type.value, d.version))
