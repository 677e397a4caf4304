"""
Integration tests for the wired sync core.

Tests:
- Allocation, return, transfer and administrative status changes
- Offline allocation, reconnect delivery and confirmation
- Abandonment and rollback of optimistic state
- Conflict detection and explicit resolution
- Usage sessions opened on deploy and closed on return
- Cancellation midway through a write
- Restart recovery and the scheduled drain
"""

import asyncio

import pytest

from fieldsync.core.exceptions import (
    AlreadyAllocated,
    Conflicted,
    InvalidTransition,
    NotAllocatedToJob,
    PersistenceUnavailable,
    ValidationFailed,
)
from fieldsync.core.factory import build_sync_core
from fieldsync.core.scheduler import DRAIN_JOB_ID
from fieldsync.crud.row_store import SQLAlchemyRowStore
from fieldsync.db.enums import AllocationState, EquipmentStatus, QueuedOperationState
from fieldsync.db.models import EQUIPMENT_TABLE, HISTORY_TABLE, JOB_TABLE, USAGE_TABLE, utc_now
from fieldsync.schemas.operations import RowOperation
from fieldsync.services.event_bus import EventType

from tests.doubles import EventRecorder, GatedRowStore, first_payload
from tests.factories import (
    DEFAULT_LOCATION_ID,
    SHOP_LOCATION_ID,
    EquipmentFactory,
    JobFactory,
    equipment_row,
    job_assignment,
)


async def deploy_elsewhere(raw_writer, equipment_id: str, job_id: str) -> None:
    """Another device deploys a unit: the equipment row and the job's list in one write."""
    assignment = await job_assignment(raw_writer, job_id)
    assignment[equipment_id] = {"node_id": None, "allocated_at": utc_now().isoformat()}
    result = await raw_writer.apply(
        [
            RowOperation.update(EQUIPMENT_TABLE, equipment_id, {"status": "deployed", "job_id": job_id}),
            RowOperation.update(JOB_TABLE, job_id, {"equipment_assignment": assignment}),
        ]
    )
    result.raise_for_error()


class TestOnlineAllocation:
    """Tests for mutations written straight to the store."""

    @pytest.mark.asyncio
    async def test_allocate_and_return_round_trip(self, core, raw_writer, events: EventRecorder):
        engine = core.engine

        record = await engine.allocate("E1", "J1", node_id="N-7")

        assert record.state == AllocationState.CONFIRMED
        assert record.previous_location_id == SHOP_LOCATION_ID
        row = await equipment_row(raw_writer, "E1")
        assert row["status"] == "deployed"
        assert row["job_id"] == "J1"
        assert row["version"] == 2
        assignment = await job_assignment(raw_writer, "J1")
        assert assignment["E1"]["node_id"] == "N-7"
        assert first_payload(events, EventType.ALLOCATION_CONFIRMED)["record"].job_id == "J1"

        snapshot = await engine.deallocate("E1", "J1")

        assert snapshot.status == EquipmentStatus.AVAILABLE
        assert snapshot.location_id == SHOP_LOCATION_ID
        assert snapshot.job_id is None
        assert engine.get_allocation("E1") is None
        assert await job_assignment(raw_writer, "J1") == {}
        history = await raw_writer.fetch_all(HISTORY_TABLE, equipment_id="E1")
        assert sorted(h["action"] for h in history) == ["allocate", "return"]

    @pytest.mark.asyncio
    async def test_explicit_return_location_wins(self, core):
        await core.engine.allocate("E1", "J1")
        snapshot = await core.engine.deallocate("E1", "J1", location_id=DEFAULT_LOCATION_ID)
        assert snapshot.location_id == DEFAULT_LOCATION_ID

    @pytest.mark.asyncio
    async def test_reallocating_to_same_job_changes_nothing(self, core, raw_writer, events: EventRecorder):
        first = await core.engine.allocate("E1", "J1")
        events.clear()

        second = await core.engine.allocate("E1", "J1")

        assert second == first
        assert events.of_type(EventType.STATUS_CHANGED) == []
        assert (await equipment_row(raw_writer, "E1"))["version"] == 2
        assert len(await raw_writer.fetch_all(HISTORY_TABLE, equipment_id="E1")) == 1

    @pytest.mark.asyncio
    async def test_allocating_to_another_job_is_refused(self, core):
        await core.engine.allocate("E1", "J1")

        with pytest.raises(AlreadyAllocated) as exc_info:
            await core.engine.allocate("E1", "J2")

        assert exc_info.value.current_job_id == "J1"
        assert core.engine.get_equipment("E1").job_id == "J1"

    @pytest.mark.asyncio
    async def test_return_from_wrong_job_is_refused(self, core):
        await core.engine.allocate("E1", "J1")
        with pytest.raises(NotAllocatedToJob):
            await core.engine.deallocate("E1", "J2")

    @pytest.mark.asyncio
    async def test_unknown_job_is_refused_without_changes(self, core, raw_writer):
        with pytest.raises(ValidationFailed):
            await core.engine.allocate("E1", "NO-SUCH-JOB")

        assert core.engine.get_equipment("E1").status == EquipmentStatus.AVAILABLE
        assert (await equipment_row(raw_writer, "E1"))["version"] == 1
        assert core.sync_queue.get_queue() == []

    @pytest.mark.asyncio
    async def test_unit_in_maintenance_cannot_be_allocated(self, core):
        await core.engine.change_status("E1", "maintenance", reason="pump seal")
        with pytest.raises(InvalidTransition):
            await core.engine.allocate("E1", "J1")

    @pytest.mark.asyncio
    async def test_transfer_moves_between_job_lists(self, core, raw_writer, events: EventRecorder):
        await core.engine.allocate("E1", "J1")
        events.clear()

        record = await core.engine.transfer("E1", "J1", "J2", node_id="N-2")

        assert record.job_id == "J2"
        assert await job_assignment(raw_writer, "J1") == {}
        assert "E1" in await job_assignment(raw_writer, "J2")
        changes = [(e.payload["previous_status"], e.payload["new_status"]) for e in events.of_type(EventType.STATUS_CHANGED)]
        assert changes == [("deployed", "available"), ("available", "deployed")]

    @pytest.mark.asyncio
    async def test_concurrent_allocations_of_one_unit(self, core, raw_writer):
        results = await asyncio.gather(
            core.engine.allocate("E1", "J1"),
            core.engine.allocate("E1", "J2"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], AlreadyAllocated)
        row = await equipment_row(raw_writer, "E1")
        winner = row["job_id"]
        assert list(await job_assignment(raw_writer, winner)) == ["E1"]
        loser = "J2" if winner == "J1" else "J1"
        assert await job_assignment(raw_writer, loser) == {}

    @pytest.mark.asyncio
    async def test_allocating_over_a_stale_mirror_is_refused(self, core, raw_writer, events: EventRecorder):
        await deploy_elsewhere(raw_writer, "E1", "J2")
        assert core.engine.get_equipment("E1").status == EquipmentStatus.AVAILABLE

        with pytest.raises(AlreadyAllocated) as exc_info:
            await core.engine.allocate("E1", "J1")

        assert exc_info.value.current_job_id == "J2"
        row = await equipment_row(raw_writer, "E1")
        assert row["job_id"] == "J2"
        assert row["version"] == 2
        assert await job_assignment(raw_writer, "J1") == {}
        assert list(await job_assignment(raw_writer, "J2")) == ["E1"]
        assert await raw_writer.fetch_all(HISTORY_TABLE, equipment_id="E1") == []
        assert core.engine.get_equipment("E1").job_id == "J2"
        assert core.engine.get_equipment("E1").version == 2
        assert core.sync_queue.get_queue() == []
        assert events.of_type(EventType.ALLOCATION_CONFIRMED) == []

    @pytest.mark.asyncio
    async def test_return_over_a_stale_mirror_is_refused(self, core, raw_writer):
        await core.engine.allocate("E1", "J1")
        await raw_writer.apply(
            [
                RowOperation.update(EQUIPMENT_TABLE, "E1", {"status": "available", "job_id": None}),
                RowOperation.update(JOB_TABLE, "J1", {"equipment_assignment": {}}),
            ]
        )

        with pytest.raises(NotAllocatedToJob):
            await core.engine.deallocate("E1", "J1")

        assert (await equipment_row(raw_writer, "E1"))["version"] == 3
        assert core.engine.get_equipment("E1").status == EquipmentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_status_change_replans_on_a_moved_row(self, core, raw_writer):
        await raw_writer.apply([RowOperation.update(EQUIPMENT_TABLE, "E1", {"notes": "checked by yard"})])

        snapshot = await core.engine.change_status("E1", "maintenance", reason="seal")

        assert snapshot.status == EquipmentStatus.MAINTENANCE
        assert snapshot.version == 3
        row = await equipment_row(raw_writer, "E1")
        assert row["status"] == "maintenance"
        assert row["version"] == 3


class TestStatusChanges:
    """Tests for administrative transitions."""

    @pytest.mark.asyncio
    async def test_deployed_to_maintenance_returns_first(self, core, raw_writer, events: EventRecorder):
        await core.engine.allocate("E1", "J1")
        events.clear()

        snapshot = await core.engine.change_status("E1", "Maintenance", reason="hydro test")

        assert snapshot.status == EquipmentStatus.MAINTENANCE
        assert snapshot.job_id is None
        changes = [(e.payload["previous_status"], e.payload["new_status"]) for e in events.of_type(EventType.STATUS_CHANGED)]
        assert changes == [("deployed", "available"), ("available", "maintenance")]
        assert await job_assignment(raw_writer, "J1") == {}
        row = await equipment_row(raw_writer, "E1")
        assert row["status"] == "maintenance"
        assert row["version"] == 3

    @pytest.mark.asyncio
    async def test_red_tag_requires_reason(self, core, raw_writer):
        with pytest.raises(ValidationFailed):
            await core.engine.change_status("E1", "red-tagged")

        assert core.engine.get_equipment("E1").status == EquipmentStatus.AVAILABLE
        assert (await equipment_row(raw_writer, "E1"))["version"] == 1

    @pytest.mark.asyncio
    async def test_red_tag_and_clear(self, core):
        tagged = await core.engine.change_status("E1", "red_tagged", reason="cracked weld", photo="weld.jpg")
        assert tagged.red_tag_reason == "cracked weld"

        cleared = await core.engine.change_status("E1", "available")
        assert cleared.red_tag_reason is None
        assert cleared.red_tag_photo is None

    @pytest.mark.asyncio
    async def test_deploy_through_status_change_is_refused(self, core):
        with pytest.raises(ValidationFailed):
            await core.engine.change_status("E1", "deployed")

    @pytest.mark.asyncio
    async def test_unknown_status_is_refused(self, core):
        with pytest.raises(ValidationFailed):
            await core.engine.change_status("E1", "on-fire")


class TestUsageSessions:
    """Tests for usage sessions written alongside deployments."""

    @pytest.mark.asyncio
    async def test_deploy_opens_and_return_closes(self, core, raw_writer):
        await core.engine.allocate("E1", "J1", notes="rig up")

        active = await core.engine.list_usage_sessions(equipment_id="E1", active_only=True)
        assert len(active) == 1
        assert active[0].job_id == "J1"
        assert active[0].notes == "rig up"
        assert active[0].is_active

        await core.engine.deallocate("E1", "J1", notes="rig down")

        sessions = await core.engine.list_usage_sessions(equipment_id="E1")
        assert len(sessions) == 1
        assert not sessions[0].is_active
        assert sessions[0].end_notes == "rig down"
        assert sessions[0].total_hours >= 0
        assert await core.engine.total_usage_hours("E1") == sessions[0].total_hours

    @pytest.mark.asyncio
    async def test_transfer_closes_old_and_opens_new(self, core):
        await core.engine.allocate("E1", "J1")
        await core.engine.transfer("E1", "J1", "J2")

        sessions = await core.engine.list_usage_sessions(equipment_id="E1")
        assert [(s.job_id, s.is_active) for s in sessions] == [("J1", False), ("J2", True)]
        assert [s.job_id for s in await core.engine.list_usage_sessions(job_id="J2")] == ["J2"]

    @pytest.mark.asyncio
    async def test_taking_out_of_service_ends_session(self, core):
        await core.engine.allocate("E1", "J1")

        await core.engine.change_status("E1", "red_tagged", reason="cracked weld")

        assert await core.engine.list_usage_sessions(equipment_id="E1", active_only=True) == []
        closed = (await core.engine.list_usage_sessions(equipment_id="E1"))[0]
        assert closed.end_notes == "cracked weld"

    @pytest.mark.asyncio
    async def test_status_change_of_idle_unit_leaves_sessions_alone(self, core):
        await core.engine.change_status("E1", "maintenance", reason="annual check")
        assert await core.engine.list_usage_sessions(equipment_id="E1") == []

    @pytest.mark.asyncio
    async def test_refused_allocation_opens_nothing(self, core):
        await core.engine.allocate("E1", "J1")
        with pytest.raises(AlreadyAllocated):
            await core.engine.allocate("E1", "J2")

        sessions = await core.engine.list_usage_sessions(equipment_id="E1")
        assert [s.job_id for s in sessions] == ["J1"]

    @pytest.mark.asyncio
    async def test_offline_deploy_opens_session_on_delivery(self, core, go_offline, go_online):
        await go_offline()
        await core.engine.allocate("E1", "J1")
        await go_online()
        assert await core.engine.list_usage_sessions(equipment_id="E1") != []

        await go_offline()
        await core.engine.deallocate("E1", "J1")
        await go_online()

        sessions = await core.engine.list_usage_sessions(equipment_id="E1")
        assert len(sessions) == 1
        assert not sessions[0].is_active


class TestBatches:
    """Tests for batch allocation and job cleanup."""

    @pytest.mark.asyncio
    async def test_fifty_units_across_ten_jobs(self, core, raw_writer):
        job_ids = [f"JB{n:02d}" for n in range(10)]
        unit_ids = [f"EB{n:02d}" for n in range(50)]
        await raw_writer.batch_insert(JOB_TABLE, [JobFactory.row(id=j) for j in job_ids])
        await raw_writer.batch_insert(
            EQUIPMENT_TABLE,
            [EquipmentFactory.row(id=u, equipment_code=f"BT-{n:03d}") for n, u in enumerate(unit_ids)],
        )
        await core.engine.load_equipment()
        elsewhere = unit_ids[:10]
        for unit_id in elsewhere:
            await core.engine.allocate(unit_id, "J3")

        items = [(unit_id, job_ids[n % 10]) for n, unit_id in enumerate(unit_ids)]
        result = await core.engine.batch_allocate(items)

        assert not result.all_succeeded
        assert len(result.succeeded) == 40
        assert len(result.failed) == 10
        assert sorted(item.equipment_id for item in result.failed) == elsewhere
        assert all(isinstance(item.error, AlreadyAllocated) for item in result.failed)
        for job_id in job_ids:
            assert len(await job_assignment(raw_writer, job_id)) == 4
        assert sorted(await job_assignment(raw_writer, "J3")) == elsewhere
        assert len(core.engine.list_equipment(EquipmentStatus.DEPLOYED)) == 50

    @pytest.mark.asyncio
    async def test_batch_reports_failures_per_item(self, core):
        await core.engine.allocate("E2", "J2")

        result = await core.engine.batch_allocate(
            [
                {"equipment_id": "E1", "job_id": "J1", "node_id": "N-1"},
                ("E2", "J1"),
                ("NOPE", "J1"),
            ]
        )

        assert [item.ok for item in result.items] == [True, False, False]
        assert isinstance(result.items[1].error, AlreadyAllocated)
        assert core.engine.get_allocation("E1").node_id == "N-1"

    @pytest.mark.asyncio
    async def test_return_all_for_job(self, core, raw_writer):
        await core.engine.allocate("E1", "J1")
        await core.engine.allocate("E2", "J1")
        await core.engine.allocate("E3", "J2")

        result = await core.engine.return_all_for_job("J1")

        assert sorted(item.equipment_id for item in result.succeeded) == ["E1", "E2"]
        assert await job_assignment(raw_writer, "J1") == {}
        assert core.engine.get_equipment("E3").job_id == "J2"

    @pytest.mark.asyncio
    async def test_return_all_for_empty_job_is_noop(self, core, events: EventRecorder):
        result = await core.engine.return_all_for_job("J3")
        assert result.items == []
        assert events.events == []


class TestCancellation:
    """Tests for callers cancelled while their write is in progress."""

    @pytest.mark.asyncio
    async def test_cancelled_allocation_leaves_no_partial_write(
        self, store_engine, queue_store, raw_writer, seeded, fast_policy, recording_sleep
    ):
        store = GatedRowStore(SQLAlchemyRowStore(store_engine, atomic_batches=False), gate=f"update {JOB_TABLE}/J1")
        sync_core = build_sync_core(
            row_store=store,
            queue_store=queue_store,
            policy=fast_policy,
            default_storage_location_id=DEFAULT_LOCATION_ID,
            write_timeout_seconds=5,
            sleep=recording_sleep,
        )
        await sync_core.start(run_scheduler=False)
        await sync_core.engine.load_equipment()
        try:
            task = asyncio.create_task(sync_core.engine.allocate("E1", "J1"))
            await asyncio.wait_for(store.reached.wait(), timeout=5)
            assert (await equipment_row(raw_writer, "E1"))["job_id"] == "J1"

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            row = await equipment_row(raw_writer, "E1")
            assert row["status"] == "available"
            assert row["job_id"] is None
            assert row["version"] == 1
            assert await job_assignment(raw_writer, "J1") == {}
            assert await raw_writer.fetch_all(HISTORY_TABLE, equipment_id="E1") == []
            assert await raw_writer.fetch_all(USAGE_TABLE, equipment_id="E1") == []
            unit = sync_core.engine.get_equipment("E1")
            assert unit.status == EquipmentStatus.AVAILABLE
            assert unit.version == 1
            assert sync_core.engine.get_allocation("E1") is None
            assert sync_core.sync_queue.get_queue() == []

            record = await sync_core.engine.allocate("E1", "J2")
            assert record.job_id == "J2"
        finally:
            store.release.set()
            sync_core.engine.close()


class TestOfflineAllocation:
    """Tests for optimistic mutations and the sync queue."""

    @pytest.mark.asyncio
    async def test_offline_allocation_is_confirmed_on_reconnect(
        self, core, raw_writer, go_offline, go_online, events: EventRecorder
    ):
        await go_offline()

        record = await core.engine.allocate("E1", "J1")

        assert record.state == AllocationState.PENDING
        assert core.engine.get_equipment("E1").status == EquipmentStatus.DEPLOYED
        assert first_payload(events, EventType.STATUS_CHANGED)["pending"] is True
        assert core.sync_queue.status().pending == 1
        op_id = core.sync_queue.get_queue()[0].id

        await go_online()

        assert core.sync_queue.get_queue() == []
        assert core.engine.get_allocation("E1").state == AllocationState.CONFIRMED
        confirmed = first_payload(events, EventType.ALLOCATION_CONFIRMED)
        assert confirmed["operation_id"] == op_id
        row = await equipment_row(raw_writer, "E1")
        assert row["job_id"] == "J1"
        assert row["version"] == 2
        assert "E1" in await job_assignment(raw_writer, "J1")

    @pytest.mark.asyncio
    async def test_later_changes_wait_behind_queued_ones(self, core, raw_writer, go_offline, go_online):
        await go_offline()
        await core.engine.allocate("E1", "J1")
        await go_online()
        await go_offline()
        await core.engine.allocate("E2", "J1")
        await core.engine.deallocate("E2", "J1")

        assert len(core.sync_queue.pending_for("E2")) == 2
        await go_online()

        row = await equipment_row(raw_writer, "E2")
        assert row["status"] == "available"
        assert row["version"] == 3
        assert list(await job_assignment(raw_writer, "J1")) == ["E1"]

    @pytest.mark.asyncio
    async def test_abandoning_reverts_optimistic_state(self, core, go_offline, events: EventRecorder):
        await go_offline()
        await core.engine.allocate("E1", "J1")
        op_id = core.sync_queue.get_queue()[0].id
        events.clear()

        await core.sync_queue.abandon(op_id)

        unit = core.engine.get_equipment("E1")
        assert unit.status == EquipmentStatus.AVAILABLE
        assert unit.version == 1
        assert core.engine.get_allocation("E1") is None
        assert len(events.of_type(EventType.OPERATION_ABANDONED)) == 1
        assert first_payload(events, EventType.ALLOCATION_ROLLED_BACK)["operation_id"] == op_id
        reverted = first_payload(events, EventType.STATUS_CHANGED)
        assert reverted["reverted"] is True
        assert reverted["new_status"] == "available"

    @pytest.mark.asyncio
    async def test_persistent_failure_affects_one_unit_only(
        self, core, raw_writer, flaky_store, go_offline, go_online, events: EventRecorder
    ):
        await go_offline()
        for equipment_id in ("E1", "E2", "E3"):
            await core.engine.allocate(equipment_id, "J1")
        flaky_store.fail_for.add("E2")

        await go_online()

        assert core.engine.get_allocation("E1").state == AllocationState.CONFIRMED
        assert core.engine.get_allocation("E3").state == AllocationState.CONFIRMED
        assert core.engine.get_equipment("E2").status == EquipmentStatus.AVAILABLE
        assert sorted(await job_assignment(raw_writer, "J1")) == ["E1", "E3"]

        stuck = core.sync_queue.get_queue()
        assert [op.target_id for op in stuck] == ["E2"]
        assert stuck[0].state == QueuedOperationState.ABANDONED
        assert first_payload(events, EventType.ALLOCATION_ROLLED_BACK)["equipment_id"] == "E2"

        events.clear()
        await core.sync_queue.abandon(stuck[0].id)
        assert core.sync_queue.get_queue() == []
        assert events.events == []

    @pytest.mark.asyncio
    async def test_restart_restores_queue_and_mirror(self, core, flaky_store, queue_store, go_offline):
        await go_offline()
        await core.engine.allocate("E1", "J1", node_id="N-4")

        restarted = build_sync_core(
            row_store=flaky_store,
            queue_store=queue_store,
            online=False,
            default_storage_location_id=DEFAULT_LOCATION_ID,
            write_timeout_seconds=5,
        )
        await restarted.start(run_scheduler=False)
        try:
            assert restarted.sync_queue.status().pending == 1
            unit = restarted.engine.get_equipment("E1")
            assert unit.status == EquipmentStatus.DEPLOYED
            allocation = restarted.engine.get_allocation("E1")
            assert allocation.is_pending
            assert allocation.node_id == "N-4"
        finally:
            restarted.engine.close()

    @pytest.mark.asyncio
    async def test_offline_allocation_of_unknown_unit_fails(self, core, go_offline):
        await go_offline()

        with pytest.raises(PersistenceUnavailable):
            await core.engine.allocate("E-NEW", "J1")


class TestConflicts:
    """Tests for divergence between local and remote state."""

    @pytest.mark.asyncio
    async def test_remote_allocation_wins_on_request(
        self, core, raw_writer, go_offline, go_online, events: EventRecorder
    ):
        await go_offline()
        await core.engine.allocate("E1", "J1")
        await deploy_elsewhere(raw_writer, "E1", "J2")

        await go_online()

        conflicts = core.resolver.list_conflicts()
        assert len(conflicts) == 1
        assert conflicts[0].remote_snapshot.job_id == "J2"
        assert len(events.of_type(EventType.CONFLICT_DETECTED)) == 1
        assert core.sync_queue.status().blocked == 1
        with pytest.raises(Conflicted):
            await core.engine.change_status("E1", "maintenance")

        await core.resolver.resolve_conflict("E1", "remote")

        unit = core.engine.get_equipment("E1")
        assert unit.job_id == "J2"
        assert core.engine.get_allocation("E1").job_id == "J2"
        assert core.sync_queue.get_queue() == []
        assert list(await job_assignment(raw_writer, "J2")) == ["E1"]
        assert "E1" not in await job_assignment(raw_writer, "J1")
        assert core.resolver.list_conflicts() == []

    @pytest.mark.asyncio
    async def test_local_choice_is_delivered(self, core, raw_writer, go_offline, go_online):
        await go_offline()
        await core.engine.allocate("E1", "J1")
        await deploy_elsewhere(raw_writer, "E1", "J2")
        await raw_writer.batch_insert(
            USAGE_TABLE,
            [{"id": "U-REMOTE", "equipment_id": "E1", "job_id": "J2", "started_at": utc_now().isoformat()}],
        )
        await go_online()

        await core.resolver.resolve_conflict("E1", "local")

        assert "E1" not in await job_assignment(raw_writer, "J2")
        remote_session = await raw_writer.fetch_one(USAGE_TABLE, "U-REMOTE")
        assert remote_session["ended_at"] is not None
        assert remote_session["end_notes"] == "conflict resolved"

        await core.sync_queue.drain()

        row = await equipment_row(raw_writer, "E1")
        assert row["job_id"] == "J1"
        assert list(await job_assignment(raw_writer, "J1")) == ["E1"]
        assert "E1" not in await job_assignment(raw_writer, "J2")
        assert core.sync_queue.get_queue() == []
        assert core.engine.get_allocation("E1").state == AllocationState.CONFIRMED
        active = await core.engine.list_usage_sessions(equipment_id="E1", active_only=True)
        assert [session.job_id for session in active] == ["J1"]

    @pytest.mark.asyncio
    async def test_remote_change_without_local_edits_is_adopted(self, core, raw_writer, events: EventRecorder):
        await raw_writer.apply([RowOperation.update(EQUIPMENT_TABLE, "E1", {"status": "maintenance"})])

        assert await core.engine.refresh("E1") is None

        assert core.engine.get_equipment("E1").status == EquipmentStatus.MAINTENANCE
        assert first_payload(events, EventType.EQUIPMENT_CHANGED)["pending"] is False

    @pytest.mark.asyncio
    async def test_stale_remote_read_is_ignored(self, core):
        await core.engine.change_status("E1", "maintenance", reason="valve")
        stale = EquipmentFactory.snapshot(id="E1", equipment_code="SS-0001", version=1)

        await core.engine.observe_remote(stale)

        assert core.engine.get_equipment("E1").status == EquipmentStatus.MAINTENANCE


class TestScheduledDrain:
    """Tests for the APScheduler drain job."""

    @pytest.mark.asyncio
    async def test_drain_job_delivers_when_store_returns(self, core, raw_writer, flaky_store):
        flaky_store.online = False
        await core.engine.allocate("E1", "J1")
        assert core.sync_queue.has_pending("E1")

        flaky_store.online = True
        await core.scheduler.drain_job()

        assert not core.sync_queue.has_pending("E1")
        assert (await equipment_row(raw_writer, "E1"))["job_id"] == "J1"

    @pytest.mark.asyncio
    async def test_drain_job_skips_while_offline(self, core, go_offline):
        await go_offline()
        await core.engine.allocate("E1", "J1")

        await core.scheduler.drain_job()

        assert core.sync_queue.status().pending == 1

    @pytest.mark.asyncio
    async def test_scheduler_registers_drain_job(self, core):
        core.scheduler.start()
        try:
            assert core.scheduler.running
            assert core.scheduler.scheduler.get_job(DRAIN_JOB_ID) is not None
        finally:
            core.scheduler.shutdown()
        assert not core.scheduler.running
