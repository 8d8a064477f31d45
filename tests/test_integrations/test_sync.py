"""Tests for sync operation tracking."""

import pytest

from src.integrations.errors import ErrorCode
from src.integrations.sync import SyncOperationTracker
from src.integrations.types import SyncOperation, SyncOperationType, SyncStatus
from src.webhooks.events import EventBus, NotificationType

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def events():
    """Create event bus with a recording listener."""
    bus = EventBus()
    bus.received = []
    bus.add_listener(bus.received.append)
    return bus


@pytest.fixture
def tracker(events):
    """Create sync tracker."""
    return SyncOperationTracker(events)


@pytest.fixture
def operation():
    """Pending import operation."""
    return SyncOperation(
        integration_name="hubspot",
        operation=SyncOperationType.IMPORT,
        entity_type="contacts",
    )


# ============================================================================
# Start Tests
# ============================================================================


class TestStart:
    """Tests for starting operations."""

    @pytest.mark.asyncio
    async def test_start(self, tracker, operation, events):
        """Test a started operation is stored as running."""
        result = await tracker.start(operation)

        assert result.success is True
        assert result.data == {"operation_id": operation.id}

        stored = tracker.get(operation.id)
        assert stored.status == SyncStatus.RUNNING
        assert stored.started_at is not None
        assert events.received[-1].type == NotificationType.SYNC_STARTED

    @pytest.mark.asyncio
    async def test_start_stores_copy(self, tracker, operation):
        """Test later changes to the caller's object do not leak in."""
        await tracker.start(operation)
        operation.entity_type = "deals"

        assert tracker.get(operation.id).entity_type == "contacts"
        assert operation.status == SyncStatus.PENDING

    @pytest.mark.asyncio
    async def test_start_duplicate(self, tracker, operation):
        """Test starting the same id twice is rejected."""
        await tracker.start(operation)

        result = await tracker.start(operation)

        assert result.error_code == ErrorCode.DUPLICATE_REGISTRATION

    def test_ids_are_unique(self):
        """Test generated ids differ."""
        first = SyncOperation(integration_name="a", operation="export", entity_type="deals")
        second = SyncOperation(integration_name="a", operation="export", entity_type="deals")

        assert first.id.startswith("sync_")
        assert first.id != second.id


# ============================================================================
# Progress Tests
# ============================================================================


class TestUpdateProgress:
    """Tests for progress updates."""

    @pytest.mark.asyncio
    async def test_successive_updates(self, tracker, operation, events):
        """Test updates merge into the stored operation."""
        await tracker.start(operation)

        await tracker.update_progress(operation.id, records_total=100)
        result = await tracker.update_progress(operation.id, records_processed=40)

        assert result.success is True
        stored = tracker.get(operation.id)
        assert stored.records_total == 100
        assert stored.records_processed == 40
        assert stored.status == SyncStatus.RUNNING
        assert events.received[-1].type == NotificationType.SYNC_PROGRESS

    @pytest.mark.asyncio
    async def test_processed_clamped_to_total(self, tracker, operation):
        """Test records_processed never exceeds a known total."""
        await tracker.start(operation)

        await tracker.update_progress(operation.id, records_total=10, records_processed=25)

        assert tracker.get(operation.id).records_processed == 10

    @pytest.mark.asyncio
    async def test_not_clamped_without_total(self, tracker, operation):
        """Test an unknown total leaves records_processed alone."""
        await tracker.start(operation)

        await tracker.update_progress(operation.id, records_processed=25)

        assert tracker.get(operation.id).records_processed == 25

    @pytest.mark.asyncio
    async def test_unknown_operation(self, tracker):
        """Test updating an unknown id."""
        result = await tracker.update_progress("sync_missing", records_processed=1)

        assert result.error_code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_protected_fields(self, tracker, operation):
        """Test status cannot be changed through progress updates."""
        await tracker.start(operation)

        result = await tracker.update_progress(operation.id, status=SyncStatus.COMPLETED)

        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert tracker.get(operation.id).status == SyncStatus.RUNNING

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("integration_name", "other"),
            ("operation", SyncOperationType.EXPORT),
            ("entity_type", "deals"),
        ],
    )
    async def test_identity_fields_protected(self, tracker, operation, field, value):
        """Test an operation's identity cannot be changed through progress."""
        await tracker.start(operation)

        result = await tracker.update_progress(operation.id, **{field: value})

        assert result.error_code == ErrorCode.INVALID_REQUEST
        stored = tracker.get(operation.id)
        assert stored.integration_name == operation.integration_name
        assert stored.operation == operation.operation
        assert stored.entity_type == operation.entity_type

    @pytest.mark.asyncio
    async def test_invalid_value_returns_failure(self, tracker, operation):
        """Test invalid progress values fail without raising."""
        await tracker.start(operation)
        await tracker.update_progress(operation.id, records_processed=3)

        result = await tracker.update_progress(operation.id, records_processed=-1)

        assert result.success is False
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert result.details["errors"][0]["loc"] == ("records_processed",)
        assert tracker.get(operation.id).records_processed == 3

    @pytest.mark.asyncio
    async def test_sync_token_and_errors(self, tracker, operation):
        """Test incremental sync token and error list are updatable."""
        await tracker.start(operation)

        await tracker.update_progress(
            operation.id,
            last_sync_token="cursor_2",
            errors=["row 7 invalid"],
        )

        stored = tracker.get(operation.id)
        assert stored.last_sync_token == "cursor_2"
        assert stored.errors == ["row 7 invalid"]

    @pytest.mark.asyncio
    async def test_update_after_completion(self, tracker, operation):
        """Test terminal operations reject further progress."""
        await tracker.start(operation)
        await tracker.complete(operation.id, SyncStatus.COMPLETED)

        result = await tracker.update_progress(operation.id, records_processed=5)

        assert result.error_code == ErrorCode.INVALID_STATE


# ============================================================================
# Complete Tests
# ============================================================================


class TestComplete:
    """Tests for completing operations."""

    @pytest.mark.asyncio
    async def test_complete(self, tracker, operation, events):
        """Test completion sets status and completion time."""
        await tracker.start(operation)

        result = await tracker.complete(operation.id, SyncStatus.COMPLETED)

        assert result.success is True
        stored = tracker.get(operation.id)
        assert stored.status == SyncStatus.COMPLETED
        assert stored.completed_at is not None
        assert stored.completed_at >= stored.started_at
        assert events.received[-1].type == NotificationType.SYNC_COMPLETED

    @pytest.mark.asyncio
    async def test_fail_with_error(self, tracker, operation):
        """Test failing records the error."""
        await tracker.start(operation)

        await tracker.complete(operation.id, SyncStatus.FAILED, "rate limited")

        stored = tracker.get(operation.id)
        assert stored.status == SyncStatus.FAILED
        assert stored.errors == ["rate limited"]

    @pytest.mark.asyncio
    async def test_second_completion_rejected(self, tracker, operation):
        """Test a terminal operation cannot be completed again."""
        await tracker.start(operation)
        await tracker.complete(operation.id, SyncStatus.COMPLETED)
        completed_at = tracker.get(operation.id).completed_at

        result = await tracker.complete(operation.id, SyncStatus.FAILED, "late error")

        assert result.error_code == ErrorCode.INVALID_STATE
        stored = tracker.get(operation.id)
        assert stored.status == SyncStatus.COMPLETED
        assert stored.completed_at == completed_at
        assert stored.errors == []

    @pytest.mark.asyncio
    async def test_non_terminal_status_rejected(self, tracker, operation):
        """Test completing with a non-terminal status."""
        await tracker.start(operation)

        result = await tracker.complete(operation.id, SyncStatus.RUNNING)

        assert result.error_code == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, tracker, operation):
        """Test completing with an unrecognized status string."""
        await tracker.start(operation)

        result = await tracker.complete(operation.id, "cancelled")

        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert tracker.get(operation.id).status == SyncStatus.RUNNING

    @pytest.mark.asyncio
    async def test_returned_operations_are_copies(self, tracker, operation):
        """Test callers cannot mutate a completed operation."""
        await tracker.start(operation)
        result = await tracker.complete(operation.id, SyncStatus.COMPLETED)

        result.data.status = SyncStatus.RUNNING
        result.data.errors.append("tampered")
        fetched = tracker.get(operation.id)
        fetched.records_processed = 99
        tracker.list_operations()[0].errors.append("tampered")

        stored = tracker.get(operation.id)
        assert stored.status == SyncStatus.COMPLETED
        assert stored.errors == []
        assert stored.records_processed == 0

    @pytest.mark.asyncio
    async def test_unknown_operation(self, tracker):
        """Test completing an unknown id."""
        result = await tracker.complete("sync_missing", SyncStatus.COMPLETED)

        assert result.error_code == ErrorCode.NOT_FOUND


# ============================================================================
# Listing Tests
# ============================================================================


class TestListOperations:
    """Tests for listing operations."""

    @pytest.mark.asyncio
    async def test_filters(self, tracker):
        """Test filtering by integration and status."""
        first = SyncOperation(integration_name="hubspot", operation="import", entity_type="contacts")
        second = SyncOperation(integration_name="stripe", operation="import", entity_type="payments")
        await tracker.start(first)
        await tracker.start(second)
        await tracker.complete(second.id, SyncStatus.COMPLETED)

        assert [o.id for o in tracker.list_operations()] == [first.id, second.id]
        assert [o.id for o in tracker.list_operations(integration_name="stripe")] == [second.id]
        assert [o.id for o in tracker.list_operations(status=SyncStatus.RUNNING)] == [first.id]

    @pytest.mark.asyncio
    async def test_clear(self, tracker, operation):
        """Test clear forgets everything."""
        await tracker.start(operation)

        tracker.clear()

        assert tracker.get(operation.id) is None
