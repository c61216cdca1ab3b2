"""
Decision Processor Module

Validates and applies a single approve/reject/delegate action against an
instance. Validation runs in a fixed order and the first failure wins:

1. the instance exists and is non-terminal (``InvalidStateError``)
2. the step is currently actionable (``StepNotActiveError``)
3. the actor satisfies the step's approver rule (``UnauthorizedActionError``)

All checks run against state re-read under the instance lock, so of two
decisions racing on one sequential step exactly one advances it and the other
sees a settled step.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from .definitions import StepTemplate, WorkflowDefinition
from .errors import (
    ConflictError, InvalidStateError, StepNotActiveError,
    UnauthorizedActionError, ValidationError
)
from .identity import Actor, IdentityProvider
from .instances import (
    Decision, DecisionAction, StepState, StepStatus, TransitionPlan,
    WorkflowInstance, WorkflowInstanceManager, WorkflowStatus
)
from .logging_config import log_action


def coerce_action(action: Union[DecisionAction, str]) -> DecisionAction:
    """Accept a DecisionAction or its string value"""
    if isinstance(action, DecisionAction):
        return action
    try:
        return DecisionAction(str(action).upper())
    except ValueError:
        raise ValidationError(f"Unknown decision action: {action}", {'action': action})


class DecisionProcessor:
    """Applies approver actions to workflow instances"""

    def __init__(self, manager: WorkflowInstanceManager, identity: IdentityProvider):
        self.manager = manager
        self.identity = identity
        self.logger = logging.getLogger("compliance_workflows.decisions")

    def submit_decision(self, instance_id: str, actor_id: str, step_sequence: int,
                        action: Union[DecisionAction, str], comment: Optional[str] = None,
                        delegate_to: Optional[str] = None,
                        on_behalf_of: Optional[str] = None) -> WorkflowInstance:
        """
        Submit an approver action on one step

        An actor can hold several standings on a step: their own plus any
        delegated to them. Each standing decides once; by default the action
        uses the first standing that has not decided yet.

        Args:
            instance_id: Workflow instance id
            actor_id: Acting user
            step_sequence: Step the action targets
            action: APPROVE, REJECT or DELEGATE
            comment: Optional free text stored on the decision
            delegate_to: Target actor for DELEGATE
            on_behalf_of: Act with this principal's standing only

        Returns:
            The instance after the decision was committed

        Raises:
            InvalidStateError: instance missing or terminal
            StepNotActiveError: step not reached or already settled
            UnauthorizedActionError: actor fails the approver rule
            ConflictError: the principal already decided on this step
            ValidationError: unknown action or bad delegation target
        """
        action = coerce_action(action)

        def apply(instance: WorkflowInstance, definition: WorkflowDefinition, plan: TransitionPlan):
            self._check_open(instance)
            step = instance.step(step_sequence)
            late_approval = self._check_actionable(instance, step, step_sequence, action)
            template = definition.step(step_sequence)
            standings = self._authorize(instance, template, step, actor_id, on_behalf_of=on_behalf_of)

            standing = self._undecided(step, standings)
            if standing is None:
                principal = standings[0][0]
                raise ConflictError(
                    f"{principal} already decided on step {step_sequence} of workflow {instance.id}",
                    {'instance_id': instance.id, 'step_sequence': step_sequence, 'principal': principal}
                )
            principal, principal_actor = standing

            decision = Decision(
                id=str(uuid.uuid4()),
                actor_id=actor_id,
                action=action,
                step_sequence=step_sequence,
                timestamp=plan.now,
                comment=comment,
                delegate_to=delegate_to if action == DecisionAction.DELEGATE else None,
                on_behalf_of=principal if principal != actor_id else None
            )

            if action == DecisionAction.DELEGATE:
                self._delegate(instance, step, actor_id, principal, delegate_to)
            step.decisions.append(decision)
            plan.decision(decision)

            if late_approval:
                self.logger.info(f"Late approval by {actor_id} on satisfied step {step_sequence} "
                                 f"of workflow {instance.id}")
            elif action == DecisionAction.APPROVE:
                self._approve(instance, template, step, principal_actor, plan)
            elif action == DecisionAction.REJECT:
                self.manager.finish(instance, WorkflowStatus.REJECTED, plan, 'step_rejected',
                                    step_sequence=step_sequence)

        instance = self.manager.mutate(instance_id, actor_id, apply)
        log_action(
            self.logger, "info",
            f"{action.value} on step {step_sequence} of workflow {instance_id}",
            actor_id=actor_id, event=f"decision_{action.value.lower()}",
            instance=instance, step_sequence=step_sequence
        )
        return instance

    def skip_step(self, instance_id: str, actor_id: str, step_sequence: int,
                  reason: str) -> WorkflowInstance:
        """
        Skip an optional ACTIVE step; progression continues as if it were satisfied

        Raises:
            InvalidStateError: instance terminal, or the step is not skippable
            StepNotActiveError: step not ACTIVE
            UnauthorizedActionError: actor fails the approver rule
        """
        def apply(instance: WorkflowInstance, definition: WorkflowDefinition, plan: TransitionPlan):
            self._check_open(instance)
            step = instance.step(step_sequence)
            if step is None or step.status != StepStatus.ACTIVE:
                raise self._not_active(instance, step_sequence, step)
            template = definition.step(step_sequence)
            self._authorize(instance, template, step, actor_id)
            if not template.can_skip:
                raise InvalidStateError(
                    f"Step {step_sequence} of workflow {instance.id} cannot be skipped",
                    {'instance_id': instance.id, 'step_sequence': step_sequence}
                )

            plan.skip(step_sequence, reason)
            self.manager.complete_step(instance, step, StepStatus.SKIPPED, plan)

        instance = self.manager.mutate(instance_id, actor_id, apply)
        self.logger.info(f"Step {step_sequence} of workflow {instance_id} skipped by {actor_id}: {reason}")
        return instance

    def can_act(self, instance: WorkflowInstance, definition: WorkflowDefinition,
                step: StepState, actor_id: str) -> bool:
        """Whether the actor could submit a decision on an ACTIVE step right now"""
        return self._standing_for_task(instance, definition, step, actor_id) is not None

    def pending_tasks(self, actor_id: str) -> List[Dict[str, Any]]:
        """ACTIVE steps across the actor's organization the actor may act on"""
        actor = self.identity.get_actor(actor_id)
        if actor is None or not actor.is_active:
            return []

        tasks = []
        for instance in self.manager.list_open_instances(actor.organization_id):
            definition = self.manager.definitions.get_definition_version(
                instance.organization_id, instance.entity_type, instance.definition_version
            )
            for step in instance.active_steps():
                principal = self._standing_for_task(instance, definition, step, actor_id)
                if principal is not None:
                    tasks.append({
                        'instance_id': instance.id,
                        'entity_type': instance.entity_type.value,
                        'entity_id': instance.entity_id,
                        'step_sequence': step.sequence,
                        'step_name': step.name,
                        'parallel': step.parallel,
                        'activated_at': step.activated_at,
                        'on_behalf_of': principal if principal != actor_id else None
                    })
        return tasks

    # Private helper methods

    def _check_open(self, instance: WorkflowInstance) -> None:
        if instance.is_terminal:
            raise InvalidStateError(
                f"Workflow {instance.id} is {instance.status.value}",
                {'instance_id': instance.id, 'status': instance.status.value}
            )

    def _check_actionable(self, instance: WorkflowInstance, step: Optional[StepState],
                          step_sequence: int, action: DecisionAction) -> bool:
        """Returns True when the action is a late approval on a satisfied parallel step"""
        if step is not None and step.status == StepStatus.ACTIVE:
            return False
        if (step is not None and step.parallel and step.status == StepStatus.SATISFIED
                and action == DecisionAction.APPROVE):
            return True
        raise self._not_active(instance, step_sequence, step)

    def _not_active(self, instance: WorkflowInstance, step_sequence: int,
                    step: Optional[StepState]) -> StepNotActiveError:
        return StepNotActiveError(
            f"Step {step_sequence} of workflow {instance.id} is not active",
            {'instance_id': instance.id, 'step_sequence': step_sequence,
             'step_status': step.status.value if step else None}
        )

    def _authorize(self, instance: WorkflowInstance, template: StepTemplate, step: StepState,
                   actor_id: str, on_behalf_of: Optional[str] = None,
                   quiet: bool = False) -> List[Tuple[str, Actor]]:
        """Standings the actor holds on the step that satisfy its approver rule"""
        actor = self.identity.get_actor(actor_id)
        if actor is None or not actor.is_active or actor.organization_id != instance.organization_id:
            raise self._unauthorized(instance, step.sequence, actor_id, quiet, "unknown or inactive actor")

        principals = step.standings_for(actor_id)
        if on_behalf_of is not None:
            if on_behalf_of not in principals:
                raise self._unauthorized(instance, step.sequence, actor_id, quiet,
                                         f"holds no standing of {on_behalf_of}")
            principals = [on_behalf_of]
        if not principals:
            raise self._unauthorized(instance, step.sequence, actor_id, quiet,
                                     f"delegated to {step.delegations[actor_id]}")

        standings = []
        for principal in principals:
            principal_actor = actor if principal == actor_id else self.identity.get_actor(principal)
            if template.approver_rule.is_satisfied_by(principal_actor):
                standings.append((principal, principal_actor))
        if not standings:
            raise self._unauthorized(instance, step.sequence, actor_id, quiet, "approver rule not satisfied")
        return standings

    def _undecided(self, step: StepState,
                   standings: List[Tuple[str, Actor]]) -> Optional[Tuple[str, Actor]]:
        decided = step.decided_principals()
        for principal, principal_actor in standings:
            if principal not in decided:
                return principal, principal_actor
        return None

    def _standing_for_task(self, instance: WorkflowInstance, definition: WorkflowDefinition,
                           step: StepState, actor_id: str) -> Optional[str]:
        if instance.is_terminal or step.status != StepStatus.ACTIVE:
            return None
        try:
            standings = self._authorize(instance, definition.step(step.sequence), step, actor_id,
                                        quiet=True)
        except UnauthorizedActionError:
            return None
        standing = self._undecided(step, standings)
        return standing[0] if standing else None

    def _unauthorized(self, instance: WorkflowInstance, step_sequence: int, actor_id: str,
                      quiet: bool, reason: str) -> UnauthorizedActionError:
        if not quiet:
            self.logger.warning(f"Unauthorized action by {actor_id} on step {step_sequence} "
                                f"of workflow {instance.id}: {reason}")
        return UnauthorizedActionError(
            f"{actor_id} may not act on step {step_sequence} of workflow {instance.id}",
            {'instance_id': instance.id, 'step_sequence': step_sequence,
             'actor_id': actor_id, 'reason': reason}
        )

    def _delegate(self, instance: WorkflowInstance, step: StepState, actor_id: str,
                  principal: str, delegate_to: Optional[str]) -> None:
        if not delegate_to:
            raise ValidationError("DELEGATE requires delegate_to", {'instance_id': instance.id})
        if delegate_to == actor_id:
            raise ValidationError("Cannot delegate to yourself",
                                  {'instance_id': instance.id, 'delegate_to': delegate_to})
        target = self.identity.get_actor(delegate_to)
        if target is None or not target.is_active or target.organization_id != instance.organization_id:
            raise ValidationError(
                f"Delegate {delegate_to} is not an active member of {instance.organization_id}",
                {'instance_id': instance.id, 'delegate_to': delegate_to}
            )

        if delegate_to == principal:
            # Handing the step back to the original approver
            step.delegations.pop(principal, None)
        else:
            step.delegations[principal] = delegate_to

    def _approve(self, instance: WorkflowInstance, template: StepTemplate, step: StepState,
                 principal_actor: Actor, plan: TransitionPlan) -> None:
        if not step.parallel:
            self.manager.complete_step(instance, step, StepStatus.SATISFIED, plan)
            return

        for key in template.approver_rule.member_keys_for(principal_actor):
            if key not in step.credited_members:
                step.credited_members.append(key)
                break

        if step.approval_count >= step.required_approvals:
            self.manager.complete_step(instance, step, StepStatus.SATISFIED, plan)
