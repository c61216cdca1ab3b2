"""
Structured Logging Configuration Module

JSON log lines keyed by workflow: every committed transition and decision
carries the instance id, the entity it approves and the acting user as
top-level fields so log pipelines can filter without parsing messages.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Optional


WORKFLOW_FIELDS = ("instance_id", "entity", "status", "step_sequence", "actor_id", "event")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, workflow fields promoted to the top level"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage()
        }
        for name in WORKFLOW_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        details = getattr(record, 'details', None)
        if details:
            log_entry['details'] = details
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "compliance_workflows",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Install a single handler on the engine logger

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root engine logger
        log_format: ``json`` for structured output, ``text`` for plain lines
        log_file: Write to this file instead of stderr
    """
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "compliance_workflows") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               actor_id: Optional[str] = None, event: Optional[str] = None,
               instance: Any = None, step_sequence: Optional[int] = None, **details):
    """
    Log a workflow action with structured fields

    Args:
        logger: Logger instance
        level: Log level name (info, warning, ...)
        message: Human-readable message
        actor_id: User who acted
        event: What happened, e.g. ``decision_approve`` or ``cancelled``
        instance: Workflow instance the action applied to
        step_sequence: Step the action targeted
        **details: Anything else, nested under ``details``
    """
    fields = {'actor_id': actor_id, 'event': event, 'step_sequence': step_sequence}
    if instance is not None:
        fields['instance_id'] = instance.id
        fields['entity'] = f"{instance.entity_type.value}:{instance.entity_id}"
        fields['status'] = instance.status.value
    if details:
        fields['details'] = details

    logger.log(getattr(logging, level.upper()), message, extra=fields)
