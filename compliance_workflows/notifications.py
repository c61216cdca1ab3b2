"""
Notification Dispatch Adapter Module

The engine announces two things: a step became actionable, and an instance
reached a terminal status. Delivery (email, in-app, webhook) belongs to the
adapters registered on the ``NotificationDispatcher``. Notification is
best-effort: an adapter failure is logged and never reaches the engine.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests


def _value(item: Any) -> Any:
    return getattr(item, 'value', item)


def build_payload(event: str, instance: Any, step: Any = None,
                  final_status: Any = None) -> Dict[str, Any]:
    """JSON-serializable description of a workflow notification"""
    payload = {
        'event': event,
        'instance_id': instance.id,
        'organization_id': instance.organization_id,
        'entity_type': _value(instance.entity_type),
        'entity_id': instance.entity_id,
        'status': _value(instance.status),
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
    if step is not None:
        payload['step_sequence'] = step.sequence
        payload['step_name'] = step.name
        payload['parallel'] = step.parallel
        payload['required_approvals'] = step.required_approvals
    if final_status is not None:
        payload['final_status'] = _value(final_status)
    return payload


class NotificationAdapter(ABC):
    """Callbacks a notification channel implements"""

    @abstractmethod
    def on_step_activated(self, instance, step) -> None:
        """A step became ACTIVE and awaits its approvers"""
        pass

    @abstractmethod
    def on_instance_completed(self, instance, final_status) -> None:
        """The instance reached APPROVED, REJECTED or CANCELLED"""
        pass


class NotificationDispatcher:
    """Fans engine callbacks out to adapters, isolating their failures"""

    def __init__(self, adapters: Optional[List[NotificationAdapter]] = None):
        self._adapters: List[NotificationAdapter] = list(adapters or [])
        self._lock = threading.RLock()
        self.failure_count = 0
        self.logger = logging.getLogger("compliance_workflows.notifications")

    def register(self, adapter: NotificationAdapter) -> None:
        with self._lock:
            self._adapters.append(adapter)

    def unregister(self, adapter: NotificationAdapter) -> None:
        with self._lock:
            try:
                self._adapters.remove(adapter)
            except ValueError:
                self.logger.warning(f"Adapter {type(adapter).__name__} was not registered")

    @property
    def adapters(self) -> List[NotificationAdapter]:
        with self._lock:
            return list(self._adapters)

    def step_activated(self, instance, step) -> None:
        for adapter in self.adapters:
            try:
                adapter.on_step_activated(instance, step)
            except Exception as e:
                self._record_failure(adapter, 'on_step_activated', instance, e)

    def instance_completed(self, instance, final_status) -> None:
        for adapter in self.adapters:
            try:
                adapter.on_instance_completed(instance, final_status)
            except Exception as e:
                self._record_failure(adapter, 'on_instance_completed', instance, e)

    def _record_failure(self, adapter: NotificationAdapter, callback: str, instance, error: Exception) -> None:
        with self._lock:
            self.failure_count += 1
        self.logger.error(
            f"Notification adapter {type(adapter).__name__}.{callback} failed for workflow {instance.id}: {error}",
            exc_info=True
        )


class LoggingNotifier(NotificationAdapter):
    """Logs notifications instead of delivering them (development channel)"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("compliance_workflows.notifications.log")

    def on_step_activated(self, instance, step) -> None:
        self.logger.info(
            f"Step {step.sequence} ({step.name or 'unnamed'}) awaiting approval on "
            f"{_value(instance.entity_type)} {instance.entity_id} [workflow {instance.id}]"
        )

    def on_instance_completed(self, instance, final_status) -> None:
        self.logger.info(
            f"Workflow {instance.id} for {_value(instance.entity_type)} {instance.entity_id} "
            f"finished {_value(final_status)}"
        )


class WebhookNotifier(NotificationAdapter):
    """POSTs notifications as JSON to an external endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(headers or {})
        self.logger = logging.getLogger("compliance_workflows.notifications.webhook")

    def on_step_activated(self, instance, step) -> bool:
        return self._post(build_payload('workflow.step_activated', instance, step=step))

    def on_instance_completed(self, instance, final_status) -> bool:
        return self._post(build_payload('workflow.completed', instance, final_status=final_status))

    def _post(self, payload: Dict[str, Any]) -> bool:
        """Send a payload; delivery retry is the receiving channel's concern"""
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout, headers=self.headers)
        except requests.RequestException as e:
            self.logger.warning(f"Webhook delivery to {self.url} failed: {e}")
            return False

        if not 200 <= response.status_code < 300:
            self.logger.warning(
                f"Webhook {self.url} rejected {payload['event']} for workflow "
                f"{payload['instance_id']}: HTTP {response.status_code}"
            )
            return False
        return True
