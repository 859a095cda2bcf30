"""State manager for loading, saving, and updating deployment records."""

import fcntl
import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from cfn_deploy.utils.errors import StateError
from cfn_deploy.utils.logging import get_logger
from .models import DeploymentRecord, DeploymentStatus, State, StatusTransition

logger = get_logger(__name__)

STATE_DIR = Path(".cfn-deploy") / "state"


class StateLockError(StateError):
    """Exception raised when state file cannot be locked."""


class StateNotFoundError(StateError):
    """Exception raised when state file does not exist."""


def default_state_path(project_name: str, environment: str, base_dir: Optional[Path] = None) -> Path:
    """Location of the state file for a project environment."""
    return (base_dir or Path.cwd()) / STATE_DIR / f"{project_name}-{environment}.json"


class StateManager:
    """Manages deployment state with file locking.

    Record mutations are serialized with a thread lock and written to disk
    immediately, so the file reflects every status transition.
    """

    def __init__(self, state_path: str):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
        """
        self.state_path = Path(state_path)
        self._lock_file: Optional[int] = None
        self._current_state: Optional[State] = None
        self._mutex = threading.RLock()

    def load(self) -> State:
        """
        Load state from file.

        Raises:
            StateNotFoundError: If state file does not exist
            StateError: If state file is corrupted or invalid
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"State file not found: {self.state_path}")

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file: {e}", cause=e)

        try:
            self._current_state = State.from_dict(data)
        except PydanticValidationError as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}", cause=e)
        return self._current_state

    def save(self, state: Optional[State] = None) -> None:
        """
        Save state to file (temporary file, then atomic rename).

        Raises:
            StateError: If state cannot be saved
        """
        with self._mutex:
            state = state or self.get_state()
            self.state_path.parent.mkdir(parents=True, exist_ok=True)

            temp_path = self.state_path.with_suffix(".tmp")
            try:
                with open(temp_path, "w") as f:
                    json.dump(state.to_dict(), f, indent=2)
                temp_path.replace(self.state_path)
            except OSError as e:
                raise StateError(f"Failed to save state file: {e}", cause=e)
            self._current_state = state

    def initialize(self, environment: str, region: str, account: str, project_name: str) -> State:
        """Create and save an empty state."""
        state = State(
            environment=environment, region=region, account=account, project_name=project_name
        )
        self.save(state)
        return state

    def load_or_initialize(self, environment: str, region: str, account: str, project_name: str) -> State:
        if self.exists():
            return self.load()
        return self.initialize(environment, region, account, project_name)

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def lock(self, timeout: int = 30) -> None:
        """
        Acquire exclusive lock on state file.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            raise StateLockError(f"Failed to open lock file {lock_path}: {e}", cause=e)

        start_time = time.time()
        while True:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.time() - start_time > timeout:
                    os.close(self._lock_file)
                    self._lock_file = None
                    raise StateLockError(
                        f"Failed to acquire lock on state file after {timeout}s",
                        suggestions=["Another deploy or destroy may be running for this environment"],
                    )
                time.sleep(0.1)

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    @property
    def is_locked(self) -> bool:
        return self._lock_file is not None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        if self.exists():
            self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()

    def get_state(self) -> State:
        """
        Get the current state.

        Raises:
            StateError: If state is not loaded
        """
        if self._current_state is None:
            raise StateError("State not loaded. Call load() first.")
        return self._current_state

    def get_record(self, stage: str) -> Optional[DeploymentRecord]:
        return self.get_state().get_record(stage)

    def record_attempt(
        self,
        stage: str,
        stack_name: str,
        parameters: Dict[str, str],
        template_hash: str,
        template_body: Optional[str] = None,
        capabilities: Iterable[str] = (),
        imports: Iterable[str] = (),
        dependencies: Iterable[str] = (),
    ) -> DeploymentRecord:
        """Create or reset a stage's record to pending before an apply.

        The content last known to be live (applied or restored by a rollback)
        is kept on the record so that a rollback can restore it.
        """
        with self._mutex:
            state = self.get_state()
            record = state.get_record(stage)

            if record is None:
                record = DeploymentRecord(stage=stage, stack_name=stack_name)
                record.history.append(
                    StatusTransition(status=DeploymentStatus.PENDING, reason="first attempt")
                )
            else:
                if record.status == DeploymentStatus.PENDING:
                    # Left pending by an interrupted run
                    record.transition(DeploymentStatus.FAILED, reason="interrupted")
                if record.status in (DeploymentStatus.APPLIED, DeploymentStatus.ROLLED_BACK):
                    record.previous = record.snapshot()
                record.transition(DeploymentStatus.PENDING, reason="apply attempt")

            record.stack_name = stack_name
            record.parameters = dict(parameters)
            record.template_hash = template_hash
            record.template_body = template_body
            record.capabilities = list(capabilities)
            record.imports = list(imports)
            record.dependencies = list(dependencies)
            record.error = None

            state.set_record(record)
            self.save(state)
            return record

    def mark_applied(
        self,
        stage: str,
        stack_id: Optional[str] = None,
        outputs: Optional[Dict[str, str]] = None,
        exports: Optional[Dict[str, str]] = None,
    ) -> DeploymentRecord:
        with self._mutex:
            record = self._require_record(stage)
            record.transition(DeploymentStatus.APPLIED)
            if stack_id:
                record.stack_id = stack_id
            record.outputs = dict(outputs or {})
            record.exports = dict(exports or {})
            record.previous = None
            record.error = None
            self.save()
            logger.debug(f"Recorded stage {stage} as applied", extra={"stage": stage})
            return record

    def mark_failed(self, stage: str, error: str) -> DeploymentRecord:
        with self._mutex:
            record = self._require_record(stage)
            record.transition(DeploymentStatus.FAILED, reason=error)
            record.error = error
            self.save()
            return record

    def mark_rolled_back(
        self,
        stage: str,
        reason: Optional[str] = None,
        restored: Optional[DeploymentRecord] = None,
        content: Optional[Dict[str, Any]] = None,
    ) -> DeploymentRecord:
        """Record that a stage's changes from a failed run were undone.

        Args:
            stage: Stage name
            reason: Why the stage was rolled back
            restored: Record from before the run; its outputs are kept
            content: Snapshot of the stack content now live; defaults to the
                restored record's own content, then to the snapshot kept by
                ``record_attempt``
        """
        with self._mutex:
            record = self._require_record(stage)
            record.transition(DeploymentStatus.ROLLED_BACK, reason=reason)
            snapshot = content or (restored.snapshot() if restored else record.previous)
            if snapshot:
                record.parameters = dict(snapshot.get("parameters") or {})
                record.template_hash = snapshot.get("template_hash")
                record.template_body = snapshot.get("template_body")
                record.capabilities = list(snapshot.get("capabilities") or [])
            if restored:
                record.outputs = dict(restored.outputs)
                record.exports = dict(restored.exports)
            record.previous = None
            self.save()
            return record

    def remove_record(self, stage: str) -> Optional[DeploymentRecord]:
        with self._mutex:
            record = self.get_state().remove_record(stage)
            self.save()
            return record

    def _require_record(self, stage: str) -> DeploymentRecord:
        record = self.get_state().get_record(stage)
        if record is None:
            raise StateError(f"No deployment record for stage '{stage}'")
        return record

