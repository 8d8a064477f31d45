"""Tracking of long-running import/export jobs.

Each operation moves pending -> running -> completed | failed. Terminal
operations are immutable: further progress updates or completions are
rejected with INVALID_STATE.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from src.integrations.errors import ErrorCode, IntegrationResult, NotFoundError
from src.integrations.types import SyncOperation, SyncStatus
from src.webhooks.events import EventBus, NotificationType

logger = structlog.get_logger(__name__)

# Fields that progress updates may not touch
_PROTECTED_FIELDS = frozenset(
    {
        "id",
        "integration_name",
        "operation",
        "entity_type",
        "status",
        "started_at",
        "completed_at",
    }
)


class SyncOperationTracker:
    """In-memory registry of sync operations keyed by id.

    Operations are never purged automatically; ``list_operations`` lets a host
    snapshot them before restart.
    """

    def __init__(self, events: EventBus | None = None) -> None:
        self.events = events or EventBus()
        self._operations: dict[str, SyncOperation] = {}
        self._logger = logger.bind(component="sync_tracker")

    async def start(self, operation: SyncOperation) -> IntegrationResult:
        """Insert an operation as running and record its start time."""
        if operation.id in self._operations:
            return IntegrationResult.fail(
                f"Sync operation {operation.id} already exists",
                ErrorCode.DUPLICATE_REGISTRATION,
            )

        stored = operation.model_copy(
            update={"status": SyncStatus.RUNNING, "started_at": datetime.now(UTC)},
            deep=True,
        )
        _clamp_progress(stored)
        self._operations[stored.id] = stored

        self._logger.info(
            "sync_started",
            operation_id=stored.id,
            integration=stored.integration_name,
            operation=stored.operation.value,
            entity_type=stored.entity_type,
        )
        await self.events.emit(NotificationType.SYNC_STARTED, operation=stored.model_dump(mode="json"))

        return IntegrationResult.ok({"operation_id": stored.id})

    async def update_progress(self, operation_id: str, **progress: Any) -> IntegrationResult:
        """Merge progress fields into a running operation.

        ``records_processed`` is clamped to ``records_total`` once the
        total is known.

        Returns:
            Success; NOT_FOUND for unknown ids (nothing changes);
            INVALID_STATE for terminal operations; INVALID_REQUEST for
            protected fields or invalid values.
        """
        operation = self._operations.get(operation_id)
        if not operation:
            return IntegrationResult.from_error(NotFoundError("Sync operation", operation_id))

        if operation.status.is_terminal:
            return IntegrationResult.fail(
                f"Sync operation {operation_id} is already {operation.status.value}",
                ErrorCode.INVALID_STATE,
            )

        protected = _PROTECTED_FIELDS.intersection(progress)
        if protected:
            return IntegrationResult.fail(
                f"Fields cannot be updated through progress: {sorted(protected)}",
                ErrorCode.INVALID_REQUEST,
            )

        try:
            updated = SyncOperation.model_validate({**operation.model_dump(), **progress})
        except ValidationError as e:
            self._logger.warning("sync_progress_invalid", operation_id=operation_id, error=str(e))
            return IntegrationResult.fail(
                f"Invalid progress for sync operation {operation_id}",
                ErrorCode.INVALID_REQUEST,
                details={"errors": e.errors(include_url=False, include_context=False)},
            )
        _clamp_progress(updated)
        self._operations[operation_id] = updated

        self._logger.debug(
            "sync_progress",
            operation_id=operation_id,
            records_processed=updated.records_processed,
            records_total=updated.records_total,
        )
        await self.events.emit(NotificationType.SYNC_PROGRESS, operation=updated.model_dump(mode="json"))

        return IntegrationResult.ok(updated.model_copy(deep=True))

    async def complete(
        self,
        operation_id: str,
        status: SyncStatus,
        error: str | None = None,
    ) -> IntegrationResult:
        """Move an operation to a terminal status.

        Args:
            operation_id: Operation id.
            status: COMPLETED or FAILED.
            error: Optional error appended to the operation's error list.

        Returns:
            Success; NOT_FOUND for unknown ids; INVALID_STATE if the
            operation is already terminal (the stored copy is untouched).
        """
        try:
            status = SyncStatus(status)
        except ValueError:
            return IntegrationResult.fail(f"Unknown sync status: {status}", ErrorCode.INVALID_REQUEST)
        if not status.is_terminal:
            return IntegrationResult.fail(
                f"Sync operations can only complete as completed or failed, not {status.value}",
                ErrorCode.INVALID_REQUEST,
            )

        operation = self._operations.get(operation_id)
        if not operation:
            return IntegrationResult.from_error(NotFoundError("Sync operation", operation_id))

        if operation.status.is_terminal:
            self._logger.warning(
                "sync_already_completed",
                operation_id=operation_id,
                status=operation.status.value,
            )
            return IntegrationResult.fail(
                f"Sync operation {operation_id} is already {operation.status.value}",
                ErrorCode.INVALID_STATE,
            )

        operation.status = status
        operation.completed_at = datetime.now(UTC)
        if error:
            operation.errors.append(error)

        self._logger.info(
            "sync_completed",
            operation_id=operation_id,
            status=status.value,
            records_processed=operation.records_processed,
            error_count=len(operation.errors),
        )
        await self.events.emit(NotificationType.SYNC_COMPLETED, operation=operation.model_dump(mode="json"))

        return IntegrationResult.ok(operation.model_copy(deep=True))

    def get(self, operation_id: str) -> SyncOperation | None:
        """Get a copy of an operation by id."""
        operation = self._operations.get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    def list_operations(
        self,
        *,
        integration_name: str | None = None,
        status: SyncStatus | None = None,
    ) -> list[SyncOperation]:
        """List copies of operations, oldest first."""
        operations = [o.model_copy(deep=True) for o in self._operations.values()]
        if integration_name:
            operations = [o for o in operations if o.integration_name == integration_name]
        if status:
            operations = [o for o in operations if o.status == status]
        operations.sort(key=lambda o: o.started_at)
        return operations

    def clear(self) -> None:
        """Forget all operations."""
        self._operations.clear()


def _clamp_progress(operation: SyncOperation) -> None:
    """Keep records_processed within records_total once the total is known."""
    if operation.records_total and operation.records_processed > operation.records_total:
        logger.warning(
            "sync_progress_clamped",
            operation_id=operation.id,
            records_processed=operation.records_processed,
            records_total=operation.records_total,
        )
        operation.records_processed = operation.records_total
