"""State store for operations, steps and scheduled definitions."""

import fcntl
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from daycycle.config.models import OperationType
from daycycle.utils.errors import ErrorContext, OperationNotFoundError, StateError
from daycycle.utils.logging import get_logger

from .models import (
    Operation,
    OperationStatus,
    OperationStep,
    ScheduledDefinition,
    StateDocument,
    StepStatus,
    utcnow,
)

logger = get_logger(__name__)

FINISHED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class StateLockError(StateError):
    """The state file lock could not be acquired in time."""


class StateStore:
    """Repository over a single JSON state document shared between processes.

    The file on disk is the source of truth. Reads pick up the latest
    document whenever the file changed since it was last seen. Writes take
    an exclusive lock on a sibling ``.lock`` file, reload, apply the change
    and flush with a write-to-temp then atomic rename, so a CLI command and
    a long-running scheduler never overwrite each other's records.
    Records handed out are copies.
    """

    def __init__(self, state_path: Optional[str] = None, lock_timeout: float = 30.0):
        """
        Initialize StateStore.

        Args:
            state_path: Path to the state file, or None to keep state in memory
            lock_timeout: Seconds to wait for another process holding the file lock

        Raises:
            StateError: If an existing state file cannot be read
        """
        self.state_path = Path(state_path) if state_path else None
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._file_locked = False
        # (inode, mtime, size) of the file the in-memory document was read from
        self._seen: Optional[Tuple[int, int, int]] = None
        self._doc = StateDocument()
        with self._reading():
            pass

    def _read(self) -> StateDocument:
        try:
            with open(self.state_path, "r") as f:
                return StateDocument.model_validate_json(f.read())
        except PydanticValidationError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to load state file {self.state_path}: {e}", cause=e)

    def _refresh(self) -> None:
        """Reload the document if another writer replaced the file."""
        if self.state_path is None:
            return
        try:
            stat = self.state_path.stat()
        except FileNotFoundError:
            self._doc = StateDocument()
            self._seen = None
            return

        signature = (stat.st_ino, stat.st_mtime_ns, stat.st_size)
        if signature != self._seen:
            self._doc = self._read()
            self._seen = signature

    def _flush(self) -> None:
        self._doc.updated_at = utcnow()
        if self.state_path is None:
            return

        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.state_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                f.write(self._doc.model_dump_json(indent=2))
            # Atomic rename
            temp_path.replace(self.state_path)
            stat = self.state_path.stat()
        except OSError as e:
            raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)
        self._seen = (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        """Exclusive flock on the sibling lock file; re-entrant within this store."""
        if self.state_path is None or self._file_locked:
            yield
            return

        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        try:
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StateLockError(
                            f"Failed to lock {lock_path} after {self.lock_timeout:.0f}s"
                        )
                    time.sleep(0.05)

            self._file_locked = True
            try:
                yield
            finally:
                self._file_locked = False
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def _reading(self) -> Iterator[StateDocument]:
        with self._lock:
            self._refresh()
            yield self._doc

    @contextmanager
    def _writing(self) -> Iterator[StateDocument]:
        """Read-modify-write of the latest document under both locks.

        A body that raises after changing the document leaves nothing on
        disk, and the next access reloads the file.
        """
        with self._lock, self._file_lock():
            # Always re-read under the file lock; the stat signature can miss
            # a rewrite that landed within the same mtime tick
            self._seen = None
            self._refresh()
            try:
                yield self._doc
            except BaseException:
                if self.state_path is not None:
                    self._seen = None
                    self._doc = StateDocument()
                raise
            self._flush()

    def ping(self) -> bool:
        """Check the backing storage is reachable and writable."""
        if self.state_path is None:
            return True
        directory = self.state_path.parent
        if not directory.exists():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(f"State directory {directory} cannot be created: {e}")
                return False
        return os.access(directory, os.W_OK)

    # Operations

    def create_operation(self, operation: Operation) -> Operation:
        with self._writing() as doc:
            if operation.operation_id in doc.operations:
                raise StateError(f"Operation {operation.operation_id} already exists")
            doc.operations[operation.operation_id] = operation.model_copy(deep=True)
            doc.steps[operation.operation_id] = []
        logger.debug(
            f"Created {operation.operation_type.value} operation",
            extra={'operation_id': operation.operation_id}
        )
        return operation

    def find_operation(self, operation_id: str) -> Optional[Operation]:
        with self._reading() as doc:
            operation = doc.operations.get(operation_id)
            return operation.model_copy(deep=True) if operation else None

    def get_operation(self, operation_id: str) -> Operation:
        """
        Get an operation by id.

        Raises:
            OperationNotFoundError: If the operation does not exist
        """
        operation = self.find_operation(operation_id)
        if operation is None:
            raise OperationNotFoundError(
                f"Operation {operation_id} not found",
                context=ErrorContext(operation_id=operation_id)
            )
        return operation

    def update_operation_status(
        self,
        operation_id: str,
        status: OperationStatus,
        error_details: Optional[str] = None,
    ) -> Operation:
        """
        Move an operation to a new status.

        Terminal operations only accept Failed -> RolledBack. Existing
        error details are kept; the first recorded failure reason wins.

        Raises:
            OperationNotFoundError: If the operation does not exist
            StateError: If the transition is not allowed
        """
        with self._writing() as doc:
            operation = doc.operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(
                    f"Operation {operation_id} not found",
                    context=ErrorContext(operation_id=operation_id)
                )

            if operation.is_terminal and not (
                operation.status == OperationStatus.FAILED
                and status == OperationStatus.ROLLED_BACK
            ):
                raise StateError(
                    f"Operation {operation_id} is {operation.status.value}; "
                    f"cannot move to {status.value}",
                    context=ErrorContext(operation_id=operation_id)
                )

            operation.status = status
            if error_details and not operation.error_details:
                operation.error_details = error_details
            if status.is_terminal:
                operation.end_time = utcnow()
            return operation.model_copy(deep=True)

    def set_expected_steps(self, operation_id: str, expected_steps: int) -> None:
        with self._writing() as doc:
            operation = doc.operations.get(operation_id)
            if operation is None:
                raise OperationNotFoundError(f"Operation {operation_id} not found")
            operation.expected_steps = expected_steps

    def list_operations(
        self,
        page: int = 1,
        page_size: int = 20,
        operation_type: Optional[OperationType] = None,
        environment: Optional[str] = None,
    ) -> Tuple[List[Operation], int]:
        """
        List operations, newest first.

        Returns:
            Tuple of (page of operations, total matching count)
        """
        page = max(page, 1)
        with self._reading() as doc:
            operations = [
                op for op in doc.operations.values()
                if (operation_type is None or op.operation_type == operation_type)
                and (environment is None or op.environment == environment)
            ]
            operations.sort(key=lambda op: op.start_time, reverse=True)
            start = (page - 1) * page_size
            return (
                [op.model_copy(deep=True) for op in operations[start:start + page_size]],
                len(operations),
            )

    # Steps

    def upsert_step(
        self,
        operation_id: str,
        step_name: str,
        status: StepStatus,
        details: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> OperationStep:
        """
        Create or update a step by name within an operation.

        New steps take the next step_order; existing steps keep theirs.
        The operation record itself is left as it is on disk.

        Args:
            operation_id: Owning operation
            step_name: Step name, unique within the operation
            status: New step status
            details: Replacement details text, or None to keep the current text
            error_message: Error text for failed steps

        Returns:
            The stored step
        """
        with self._writing() as doc:
            if operation_id not in doc.operations:
                raise OperationNotFoundError(f"Operation {operation_id} not found")

            steps = doc.steps.setdefault(operation_id, [])
            step = next((s for s in steps if s.step_name == step_name), None)

            if step is None:
                step = OperationStep(
                    operation_id=operation_id,
                    step_name=step_name,
                    step_order=max((s.step_order for s in steps), default=0) + 1,
                    status=status,
                    details=details or "",
                    error_message=error_message,
                )
                steps.append(step)
            else:
                step.status = status
                if details is not None:
                    step.details = details
                if error_message is not None:
                    step.error_message = error_message
                if status == StepStatus.RUNNING:
                    step.end_time = None

            if status in FINISHED_STEP_STATUSES:
                step.end_time = utcnow()
            return step.model_copy(deep=True)

    def get_steps(self, operation_id: str) -> List[OperationStep]:
        """Steps of an operation ordered by step_order."""
        with self._reading() as doc:
            steps = doc.steps.get(operation_id, [])
            return [s.model_copy(deep=True) for s in sorted(steps, key=lambda s: s.step_order)]

    def get_step(self, operation_id: str, step_name: str) -> Optional[OperationStep]:
        with self._reading() as doc:
            for step in doc.steps.get(operation_id, []):
                if step.step_name == step_name:
                    return step.model_copy(deep=True)
            return None

    # Scheduled definitions

    def add_schedule(self, definition: ScheduledDefinition) -> ScheduledDefinition:
        with self._writing() as doc:
            if definition.schedule_id in doc.schedules:
                raise StateError(f"Schedule {definition.schedule_id} already exists")
            doc.schedules[definition.schedule_id] = definition.model_copy(deep=True)
        return definition

    def save_schedule(self, definition: ScheduledDefinition) -> ScheduledDefinition:
        """Replace a stored definition wholesale."""
        with self._writing() as doc:
            if definition.schedule_id not in doc.schedules:
                raise OperationNotFoundError(f"Schedule {definition.schedule_id} not found")
            doc.schedules[definition.schedule_id] = definition.model_copy(deep=True)
        return definition

    def modify_schedule(
        self,
        schedule_id: str,
        change: Callable[[ScheduledDefinition], bool],
    ) -> Optional[ScheduledDefinition]:
        """Apply a change to the latest stored definition in one locked step.

        Args:
            schedule_id: Definition to change
            change: Edits the definition it is given in place; returns False
                to leave the stored definition untouched

        Returns:
            Copy of the stored definition after the change, or None when
            the change was abandoned

        Raises:
            OperationNotFoundError: If the definition does not exist
        """
        with self._writing() as doc:
            current = doc.schedules.get(schedule_id)
            if current is None:
                raise OperationNotFoundError(f"Schedule {schedule_id} not found")

            updated = current.model_copy(deep=True)
            if change(updated) is False:
                return None
            doc.schedules[schedule_id] = updated
            return updated.model_copy(deep=True)

    def get_schedule(self, schedule_id: str) -> ScheduledDefinition:
        with self._reading() as doc:
            definition = doc.schedules.get(schedule_id)
            if definition is None:
                raise OperationNotFoundError(f"Schedule {schedule_id} not found")
            return definition.model_copy(deep=True)

    def list_schedules(self, environment: Optional[str] = None) -> List[ScheduledDefinition]:
        """List scheduled definitions ordered by next execution time."""
        with self._reading() as doc:
            definitions = [
                d.model_copy(deep=True) for d in doc.schedules.values()
                if environment is None or d.environment == environment
            ]
        definitions.sort(key=lambda d: d.next_execution_time)
        return definitions
