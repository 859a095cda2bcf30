"""Tests for deployment records and the state manager."""

import json

import pytest

from cfn_deploy.state.manager import StateLockError, StateManager, StateNotFoundError, default_state_path
from cfn_deploy.state.models import DeploymentRecord, DeploymentStatus
from cfn_deploy.utils.errors import StateError


@pytest.fixture
def manager(tmp_path):
    manager = StateManager(str(default_state_path("demo", "dev", tmp_path)))
    manager.initialize(environment="dev", region="us-east-1", account="123456789012", project_name="demo")
    return manager


def attempt(manager, stage="network", body="Resources: {}", parameters=None):
    return manager.record_attempt(
        stage=stage,
        stack_name=stage,
        parameters=parameters or {"VpcCidr": "10.0.0.0/16"},
        template_hash=f"hash-{body}",
        template_body=body,
    )


class TestTransitions:
    """Allowed and rejected status changes."""

    @pytest.mark.parametrize("start,target", [
        (DeploymentStatus.PENDING, DeploymentStatus.APPLIED),
        (DeploymentStatus.PENDING, DeploymentStatus.FAILED),
        (DeploymentStatus.APPLIED, DeploymentStatus.PENDING),
        (DeploymentStatus.APPLIED, DeploymentStatus.ROLLED_BACK),
        (DeploymentStatus.FAILED, DeploymentStatus.PENDING),
        (DeploymentStatus.FAILED, DeploymentStatus.ROLLED_BACK),
        (DeploymentStatus.ROLLED_BACK, DeploymentStatus.PENDING),
    ])
    def test_allowed(self, start, target):
        record = DeploymentRecord(stage="network", stack_name="network", status=start)
        record.transition(target, reason="test")
        assert record.status == target
        assert record.history[-1].reason == "test"

    @pytest.mark.parametrize("start,target", [
        (DeploymentStatus.PENDING, DeploymentStatus.ROLLED_BACK),
        (DeploymentStatus.APPLIED, DeploymentStatus.FAILED),
        (DeploymentStatus.FAILED, DeploymentStatus.APPLIED),
        (DeploymentStatus.ROLLED_BACK, DeploymentStatus.APPLIED),
    ])
    def test_rejected(self, start, target):
        record = DeploymentRecord(stage="network", stack_name="network", status=start)
        with pytest.raises(StateError, match="Invalid status transition"):
            record.transition(target)


class TestStateManager:
    """Persistence and record updates."""

    def test_default_path(self, tmp_path):
        assert default_state_path("demo", "dev", tmp_path) == tmp_path / ".cfn-deploy" / "state" / "demo-dev.json"

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(StateNotFoundError):
            StateManager(str(tmp_path / "absent.json")).load()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateError, match="Failed to parse state file"):
            StateManager(str(path)).load()

    def test_every_transition_is_written(self, manager):
        attempt(manager)
        on_disk = json.loads(manager.state_path.read_text())
        assert on_disk["records"]["network"]["status"] == "pending"

        manager.mark_applied("network", stack_id="arn:stack/network", outputs={"VpcId": "vpc-1"},
                             exports={"network-VpcId": "vpc-1"})
        reloaded = StateManager(str(manager.state_path)).load()
        record = reloaded.get_record("network")
        assert record.status == DeploymentStatus.APPLIED
        assert record.outputs == {"VpcId": "vpc-1"}
        assert reloaded.find_export("network-VpcId").stage == "network"
        assert [entry.status for entry in record.history] == [DeploymentStatus.PENDING, DeploymentStatus.APPLIED]

    def test_no_temporary_file_left_behind(self, manager):
        attempt(manager)
        assert not manager.state_path.with_suffix(".tmp").exists()

    def test_reattempt_keeps_applied_snapshot(self, manager):
        attempt(manager, body="v1")
        manager.mark_applied("network")
        record = attempt(manager, body="v2")
        assert record.status == DeploymentStatus.PENDING
        assert record.previous["template_body"] == "v1"
        assert record.template_body == "v2"

    def test_interrupted_pending_record_is_failed_first(self, manager):
        attempt(manager)
        record = attempt(manager)
        statuses = [entry.status for entry in record.history]
        assert statuses == [DeploymentStatus.PENDING, DeploymentStatus.FAILED, DeploymentStatus.PENDING]
        assert record.history[1].reason == "interrupted"

    def test_mark_failed_keeps_error(self, manager):
        attempt(manager)
        record = manager.mark_failed("network", "CREATE_FAILED")
        assert record.status == DeploymentStatus.FAILED
        assert record.error == "CREATE_FAILED"

    def test_rolled_back_restores_previous_content(self, manager):
        attempt(manager, body="v1", parameters={"VpcCidr": "10.0.0.0/16"})
        manager.mark_applied("network", outputs={"VpcId": "vpc-1"})
        attempt(manager, body="v2", parameters={"VpcCidr": "10.1.0.0/16"})
        manager.mark_applied("network", outputs={"VpcId": "vpc-2"})

        before = DeploymentRecord(
            stage="network",
            stack_name="network",
            status=DeploymentStatus.APPLIED,
            parameters={"VpcCidr": "10.0.0.0/16"},
            template_hash="hash-v1",
            template_body="v1",
            outputs={"VpcId": "vpc-1"},
        )
        record = manager.mark_rolled_back("network", reason="rollback", restored=before)
        assert record.status == DeploymentStatus.ROLLED_BACK
        assert record.template_body == "v1"
        assert record.parameters == {"VpcCidr": "10.0.0.0/16"}
        assert record.outputs == {"VpcId": "vpc-1"}

    def test_rolled_back_with_explicit_content(self, manager):
        attempt(manager, body="v1")
        manager.mark_applied("network", outputs={"VpcId": "vpc-1"})
        attempt(manager, body="v2")
        failed = manager.mark_failed("network", "UPDATE_FAILED")
        before = failed.model_copy(deep=True)
        attempt(manager, body="v3")

        record = manager.mark_rolled_back("network", restored=before, content=before.previous)

        assert record.template_body == "v1"
        assert record.outputs == {"VpcId": "vpc-1"}
        assert record.previous is None

    def test_reattempt_after_rollback_keeps_restored_content(self, manager):
        attempt(manager, body="v1")
        manager.mark_applied("network")
        attempt(manager, body="v2")
        manager.mark_rolled_back("network", reason="rollback")
        record = attempt(manager, body="v3")
        assert record.previous["template_body"] == "v1"

    def test_unknown_stage(self, manager):
        with pytest.raises(StateError, match="No deployment record"):
            manager.mark_applied("absent")

    def test_remove_record(self, manager):
        attempt(manager)
        manager.remove_record("network")
        assert StateManager(str(manager.state_path)).load().records == {}


class TestLocking:
    """Exclusive access to an environment's state."""

    def test_second_manager_cannot_lock(self, manager):
        other = StateManager(str(manager.state_path))
        with manager:
            assert manager.is_locked
            with pytest.raises(StateLockError):
                other.lock(timeout=0)
        assert not manager.is_locked
        other.lock(timeout=0)
        other.unlock()
