"""
Test suite for the workflow instance manager

Tests instance start, hold/activate, cancellation, the one-open-instance
guard, version pinning, status queries and atomic commits.
"""

import pytest

from compliance_workflows.storage import InMemoryStorage, RecordExistsError
from compliance_workflows.audit import AuditLedger, HistoryEventKind
from compliance_workflows.definitions import ApproverRule, DefinitionStore, EntityType, StepTemplate
from compliance_workflows.errors import (
    ConflictError, InvalidStateError, NotFoundError, PersistenceError, WorkflowError
)
from compliance_workflows.instances import (
    InstanceNotFoundError, StepStatus, WorkflowInstance, WorkflowInstanceManager, WorkflowStatus
)


class FlakyStorage(InMemoryStorage):
    """In-memory storage whose ledger inserts can be made to fail"""

    def __init__(self):
        super().__init__()
        self.fail_ledger_writes = False

    def insert(self, table, record_id, data):
        if self.fail_ledger_writes and table == "workflow_history":
            raise RuntimeError("disk full")
        super().insert(table, record_id, data)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return FlakyStorage()


@pytest.fixture
def ledger(storage):
    return AuditLedger(storage)


@pytest.fixture
def definitions(storage, ledger):
    store = DefinitionStore(storage, ledger)
    store.publish_definition("org1", EntityType.CASE_CLOSURE, [
        StepTemplate(sequence=0, approver_rule=ApproverRule.for_roles("investigator"), name="Investigator"),
        StepTemplate(sequence=1, approver_rule=ApproverRule.for_roles("compliance_officer"), name="CCO"),
        StepTemplate(sequence=2, approver_rule=ApproverRule.for_roles("legal"), name="Legal")
    ], "admin", default_sla_hours=48)
    store.publish_definition("org1", EntityType.POLICY, [
        StepTemplate(sequence=0, approver_rule=ApproverRule.for_roles("legal", "hr"), parallel=True)
    ], "admin")
    return store


@pytest.fixture
def manager(storage, definitions, ledger):
    return WorkflowInstanceManager(storage, definitions, ledger)


class TestStart:
    """Test starting approval for an entity"""

    def test_start_activates_first_step(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        assert instance.status == WorkflowStatus.IN_PROGRESS
        assert instance.current_step_sequence == 0
        assert [s.status for s in instance.steps] == [StepStatus.ACTIVE, StepStatus.LOCKED, StepStatus.LOCKED]
        assert instance.steps[0].activated_at is not None
        assert instance.definition_version == 1
        assert instance.initiated_by == "alice"
        assert instance.completed_at is None
        assert instance.revision == 1

    def test_start_then_get_status(self, manager):
        started = manager.start("CASE_CLOSURE", "case-1", "org1", "alice")
        status = manager.get_status(EntityType.CASE_CLOSURE, "case-1")

        assert status.id == started.id
        assert status.status == WorkflowStatus.IN_PROGRESS
        assert len(status.active_steps()) == 1
        assert status.active_steps()[0].sequence == 0

    def test_parallel_first_step_active_as_group(self, manager):
        instance = manager.start(EntityType.POLICY, "pol-1", "org1", "alice")

        assert len(instance.active_steps()) == 1
        step = instance.step(0)
        assert step.parallel
        assert step.required_approvals == 2

    def test_due_at_from_default_sla(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        assert (instance.due_at - instance.created_at).total_seconds() == 48 * 3600

        policy = manager.start(EntityType.POLICY, "pol-1", "org1", "alice")
        assert policy.due_at is None

    def test_context_is_stored(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice",
                                 context={"case_number": "C-2024-001"})
        assert manager.get_instance(instance.id).context == {"case_number": "C-2024-001"}

    def test_start_records_transition(self, manager, ledger):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        history = ledger.get_history(instance.id)

        assert len(history) == 1
        assert history[0].kind == HistoryEventKind.TRANSITION
        assert history[0].payload['from_status'] is None
        assert history[0].payload['to_status'] == "IN_PROGRESS"
        assert history[0].payload['cause'] == "started"
        assert history[0].actor_id == "alice"

    def test_duplicate_start_conflicts(self, manager):
        first = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        with pytest.raises(ConflictError) as exc_info:
            manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "bob")
        assert exc_info.value.details['instance_id'] == first.id

    def test_same_id_different_entity_type_is_independent(self, manager):
        manager.start(EntityType.CASE_CLOSURE, "shared-1", "org1", "alice")
        assert manager.start(EntityType.POLICY, "shared-1", "org1", "alice") is not None

    def test_restart_after_terminal(self, manager):
        first = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        manager.cancel(first.id, "alice", "withdrawn")

        second = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        assert second.id != first.id
        assert manager.get_status(EntityType.CASE_CLOSURE, "case-1").id == second.id

    def test_missing_definition_means_no_approval(self, manager):
        assert manager.start(EntityType.DISCLOSURE, "disc-1", "org1", "alice") is None
        assert manager.get_status(EntityType.DISCLOSURE, "disc-1") is None

    def test_missing_definition_required(self, storage, definitions, ledger):
        strict = WorkflowInstanceManager(storage, definitions, ledger, require_definition=True)
        with pytest.raises(NotFoundError):
            strict.start(EntityType.DISCLOSURE, "disc-1", "org1", "alice")


class TestHoldAndActivate:
    """Test PENDING instances"""

    def test_start_on_hold(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice", hold=True)

        assert instance.status == WorkflowStatus.PENDING
        assert all(s.status == StepStatus.LOCKED for s in instance.steps)
        assert instance.active_steps() == []

    def test_pending_instance_blocks_second_start(self, manager):
        manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice", hold=True)
        with pytest.raises(ConflictError):
            manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

    def test_activate(self, manager, ledger):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice", hold=True)
        activated = manager.activate(instance.id, "scheduler")

        assert activated.status == WorkflowStatus.IN_PROGRESS
        assert activated.step(0).status == StepStatus.ACTIVE
        causes = [e.payload['cause'] for e in ledger.get_history(instance.id)]
        assert causes == ["started_on_hold", "activated"]

    def test_activate_requires_pending(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        with pytest.raises(InvalidStateError):
            manager.activate(instance.id, "scheduler")

    def test_cancel_pending(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice", hold=True)
        cancelled = manager.cancel(instance.id, "alice", "no longer needed")
        assert cancelled.status == WorkflowStatus.CANCELLED


class TestCancel:
    """Test cancellation"""

    def test_cancel(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        cancelled = manager.cancel(instance.id, "bob", "case reopened")

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.cancelled_by == "bob"
        assert cancelled.cancel_reason == "case reopened"
        assert cancelled.completed_at is not None

    def test_cancel_is_idempotent(self, manager, ledger):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        first = manager.cancel(instance.id, "bob", "case reopened")
        second = manager.cancel(instance.id, "carol", "duplicate click")

        assert first.status == WorkflowStatus.CANCELLED
        assert second.status == WorkflowStatus.CANCELLED
        assert second.cancelled_by == "bob"
        assert second.revision == first.revision
        # start + one cancellation
        assert len(ledger.get_history(instance.id)) == 2

    def test_cancel_terminal_instance_fails(self, manager, storage):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        data = storage.load(WorkflowInstanceManager.TABLE, instance.id)
        data['status'] = "APPROVED"
        storage.save(WorkflowInstanceManager.TABLE, instance.id, data)

        with pytest.raises(InvalidStateError):
            manager.cancel(instance.id, "bob", "too late")

    def test_cancel_missing_instance(self, manager):
        with pytest.raises(InstanceNotFoundError) as exc_info:
            manager.cancel("missing", "bob", "x")

        assert isinstance(exc_info.value, NotFoundError)
        assert isinstance(exc_info.value, InvalidStateError)


class TestVersionPinning:
    """Test that running instances keep their definition version"""

    def test_instance_keeps_pinned_version(self, manager, definitions):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        definitions.publish_definition("org1", EntityType.CASE_CLOSURE, [
            StepTemplate(sequence=0, approver_rule=ApproverRule.for_roles("ceo"))
        ], "admin")

        reloaded = manager.get_instance(instance.id)
        assert reloaded.definition_version == 1
        assert len(reloaded.steps) == 3
        # Mutations still resolve the pinned version
        assert manager.cancel(instance.id, "alice", "x").status == WorkflowStatus.CANCELLED

    def test_new_instance_uses_latest_version(self, manager, definitions):
        definitions.publish_definition("org1", EntityType.CASE_CLOSURE, [
            StepTemplate(sequence=0, approver_rule=ApproverRule.for_roles("ceo"))
        ], "admin")
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        assert instance.definition_version == 2
        assert len(instance.steps) == 1


class TestQueries:
    """Test status and listing queries"""

    def test_get_instance_missing(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_instance("nope")

    def test_get_status_unknown_entity(self, manager):
        assert manager.get_status(EntityType.CASE_CLOSURE, "never-started") is None

    def test_get_status_returns_latest_terminal(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        manager.cancel(instance.id, "alice", "x")

        status = manager.get_status(EntityType.CASE_CLOSURE, "case-1")
        assert status.id == instance.id
        assert status.status == WorkflowStatus.CANCELLED

    def test_list_instances_newest_first(self, manager):
        first = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        manager.cancel(first.id, "alice", "x")
        second = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        assert [i.id for i in manager.list_instances("CASE_CLOSURE", "case-1")] == [second.id, first.id]

    def test_list_open_instances(self, manager):
        open_one = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        closed = manager.start(EntityType.CASE_CLOSURE, "case-2", "org1", "alice")
        manager.cancel(closed.id, "alice", "x")

        assert [i.id for i in manager.list_open_instances("org1")] == [open_one.id]
        assert manager.list_open_instances("org2") == []

    def test_instance_round_trip(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        restored = WorkflowInstance.from_dict(instance.to_dict())

        assert restored.to_dict() == instance.to_dict()


class TestAtomicCommit:
    """Test that failed commits leave no partial state"""

    def test_failed_start_writes_nothing(self, manager, storage):
        storage.fail_ledger_writes = True

        with pytest.raises(PersistenceError):
            manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        storage.fail_ledger_writes = False
        assert manager.get_status(EntityType.CASE_CLOSURE, "case-1") is None
        assert manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice") is not None

    def test_failed_cancel_keeps_previous_state(self, manager, storage, ledger):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        storage.fail_ledger_writes = True

        with pytest.raises(PersistenceError):
            manager.cancel(instance.id, "bob", "x")

        storage.fail_ledger_writes = False
        reloaded = manager.get_instance(instance.id)
        assert reloaded.status == WorkflowStatus.IN_PROGRESS
        assert reloaded.revision == 1
        assert len(ledger.get_history(instance.id)) == 1

    def test_stale_revision_detected(self, manager, storage):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")

        def apply(inst, definition, plan):
            # Another process commits between our read and our write
            data = storage.load(WorkflowInstanceManager.TABLE, inst.id)
            data['revision'] += 1
            storage.save(WorkflowInstanceManager.TABLE, inst.id, data)
            manager.finish(inst, WorkflowStatus.CANCELLED, plan, 'cancelled')

        with pytest.raises(PersistenceError, match="concurrently"):
            manager.mutate(instance.id, "bob", apply)

    def test_errors_share_a_base(self):
        assert issubclass(PersistenceError, WorkflowError)
        assert issubclass(InstanceNotFoundError, WorkflowError)

    def test_record_exists_error(self, storage):
        storage.insert("t", "a", {"id": "a"})
        with pytest.raises(RecordExistsError):
            storage.insert("t", "a", {"id": "a"})

    def test_locks_released(self, manager):
        instance = manager.start(EntityType.CASE_CLOSURE, "case-1", "org1", "alice")
        manager.cancel(instance.id, "bob", "x")
        assert manager.locks.active_keys() == 0
