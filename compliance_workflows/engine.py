"""
Approval Engine Facade

Wires the definition store, instance manager, decision processor, history
ledger, notification dispatch and SLA tracker over one storage backend and
one lock registry. Entity-owning modules (policies, investigations, cases)
talk to this class keyed by their own ``(entity_type, entity_id)``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .audit import AuditLedger, HistoryEvent
from .config import WorkflowConfig, get_config
from .decisions import DecisionProcessor
from .definitions import DefinitionStore, EntityType, StepTemplate, WorkflowDefinition
from .identity import IdentityProvider, InMemoryIdentityDirectory
from .instances import DecisionAction, WorkflowInstance, WorkflowInstanceManager
from .locking import InstanceLockRegistry
from .logging_config import setup_logging
from .notifications import NotificationAdapter, NotificationDispatcher, WebhookNotifier
from .sla import SlaReport, SlaTracker
from .storage import StorageInterface, create_storage


class WorkflowEngine:
    """Generic multi-step approval engine for arbitrary entity kinds"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 identity: Optional[IdentityProvider] = None,
                 config: Optional[WorkflowConfig] = None,
                 adapters: Optional[Iterable[NotificationAdapter]] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.identity = identity or InMemoryIdentityDirectory()
        self.logger = logging.getLogger("compliance_workflows.engine")

        self.locks = InstanceLockRegistry()
        self.ledger = AuditLedger(self.storage, hash_chain=self.config.enable_audit_hash_chain)
        self.notifier = NotificationDispatcher(list(adapters or []))
        if self.config.notification_webhook_url:
            self.notifier.register(WebhookNotifier(self.config.notification_webhook_url,
                                                   timeout=self.config.notification_timeout))

        self.definitions = DefinitionStore(self.storage, self.ledger, self.locks)
        self.instances = WorkflowInstanceManager(
            self.storage, self.definitions, ledger=self.ledger, notifier=self.notifier,
            locks=self.locks, require_definition=self.config.require_definition
        )
        self.decisions = DecisionProcessor(self.instances, self.identity)
        self.sla = SlaTracker(self.config.sla_warning_threshold_percent, self.config.sla_critical_hours)
        self.logger.debug(f"Workflow engine ready on {type(self.storage).__name__}")

    # Definitions

    def publish_definition(self, organization_id: str, entity_type: Union[EntityType, str],
                           steps: Iterable[StepTemplate], created_by: str,
                           **kwargs) -> WorkflowDefinition:
        return self.definitions.publish_definition(organization_id, entity_type, steps,
                                                   created_by, **kwargs)

    def get_definition(self, organization_id: str,
                       entity_type: Union[EntityType, str]) -> WorkflowDefinition:
        return self.definitions.get_definition(organization_id, entity_type)

    def get_definition_version(self, organization_id: str, entity_type: Union[EntityType, str],
                               version: int) -> WorkflowDefinition:
        return self.definitions.get_definition_version(organization_id, entity_type, version)

    def deactivate_definition(self, organization_id: str, entity_type: Union[EntityType, str],
                              actor_id: str) -> WorkflowDefinition:
        return self.definitions.deactivate_definition(organization_id, entity_type, actor_id)

    def list_definitions(self, organization_id: str,
                         entity_type: Optional[Union[EntityType, str]] = None) -> List[WorkflowDefinition]:
        return self.definitions.list_definitions(organization_id, entity_type)

    # Instances

    def start(self, entity_type: Union[EntityType, str], entity_id: str, organization_id: str,
              initiator_id: str, context: Optional[Dict[str, Any]] = None,
              hold: bool = False) -> Optional[WorkflowInstance]:
        return self.instances.start(entity_type, entity_id, organization_id, initiator_id,
                                    context=context, hold=hold)

    def activate(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        return self.instances.activate(instance_id, actor_id)

    def cancel(self, instance_id: str, actor_id: str, reason: str) -> WorkflowInstance:
        return self.instances.cancel(instance_id, actor_id, reason)

    def get_status(self, entity_type: Union[EntityType, str], entity_id: str) -> Optional[WorkflowInstance]:
        return self.instances.get_status(entity_type, entity_id)

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.instances.get_instance(instance_id)

    def list_instances(self, entity_type: Union[EntityType, str], entity_id: str) -> List[WorkflowInstance]:
        return self.instances.list_instances(entity_type, entity_id)

    # Decisions

    def submit_decision(self, instance_id: str, actor_id: str, step_sequence: int,
                        action: Union[DecisionAction, str], comment: Optional[str] = None,
                        delegate_to: Optional[str] = None,
                        on_behalf_of: Optional[str] = None) -> WorkflowInstance:
        return self.decisions.submit_decision(instance_id, actor_id, step_sequence, action,
                                              comment=comment, delegate_to=delegate_to,
                                              on_behalf_of=on_behalf_of)

    def skip_step(self, instance_id: str, actor_id: str, step_sequence: int,
                  reason: str) -> WorkflowInstance:
        return self.decisions.skip_step(instance_id, actor_id, step_sequence, reason)

    def get_pending_tasks(self, actor_id: str) -> List[Dict[str, Any]]:
        """Steps awaiting this actor's decision, oldest instance first"""
        return self.decisions.pending_tasks(actor_id)

    # History and SLA

    def get_history(self, instance_id: str) -> List[HistoryEvent]:
        """Ordered transition and decision events of one instance"""
        return self.ledger.get_history(instance_id)

    def verify_history(self, instance_id: str) -> Dict[str, Any]:
        return self.ledger.verify_integrity(instance_id)

    def check_sla(self, organization_id: str) -> List[SlaReport]:
        """Open instances of an organization that are at risk or overdue"""
        return self.sla.scan(self.instances.list_open_instances(organization_id))

    def configure_logging(self) -> logging.Logger:
        """Install the configured log handler on the package logger"""
        return setup_logging(self.config.log_level, log_format=self.config.log_format,
                             log_file=self.config.log_file)

    def close(self) -> None:
        self.storage.close()
