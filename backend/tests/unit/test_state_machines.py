"""Unit tests for the pipeline state machines

Every machine is checked against its full transition table: allowed
transitions succeed, every other pair raises StateTransitionError and leaves
the entity unchanged.
"""

import uuid
from datetime import date, datetime, timezone

import pytest

from domain.state_machine import StateTransitionError, terminal_states
from models import Posting, SettlementBatch, Shipment, SyncJob
from postings import status as posting_status
from postings.status import PostingStatus, PostingType
from settlements import status as settlement_status
from settlements.status import SettlementStatus
from shipments import status as shipment_status
from shipments.status import MarketPushStatus, ShipmentStatus
from sync import status as sync_status
from sync.status import SyncJobStatus

NOW = datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)
TENANT_ID = uuid.uuid4()


def _all_pairs(enum_cls):
    return [(current, target) for current in enum_cls for target in enum_cls]


class TestSyncJobStateMachine:
    def test_table(self):
        assert sync_status.can_transition(SyncJobStatus.PENDING, SyncJobStatus.RUNNING)
        assert sync_status.can_transition(SyncJobStatus.RUNNING, SyncJobStatus.COMPLETED)
        assert sync_status.can_transition(SyncJobStatus.RUNNING, SyncJobStatus.FAILED)
        assert sync_status.can_transition(SyncJobStatus.FAILED, SyncJobStatus.PENDING)
        assert terminal_states(sync_status.ALLOWED_TRANSITIONS) == [SyncJobStatus.COMPLETED]

    @pytest.mark.parametrize("current,target", _all_pairs(SyncJobStatus))
    def test_every_pair(self, current, target):
        job = SyncJob.create(
            tenant_id=TENANT_ID,
            store_id=uuid.uuid4(),
            sync_start_time=NOW,
            sync_end_time=NOW,
            now=NOW,
        )
        job.status = current.value

        if sync_status.can_transition(current, target):
            job.transition_to(target, NOW)
            assert job.status == target.value
        else:
            with pytest.raises(StateTransitionError):
                job.transition_to(target, NOW)
            assert job.status == current.value

    def test_lock_follows_status(self):
        """Only PENDING and RUNNING jobs hold the per-store lock"""
        job = SyncJob.create(tenant_id=TENANT_ID, store_id=uuid.uuid4(), sync_start_time=NOW, sync_end_time=NOW)
        assert job.active_lock is not None

        job.transition_to(SyncJobStatus.RUNNING)
        assert job.active_lock is not None

        job.transition_to(SyncJobStatus.FAILED)
        assert job.active_lock is None

        job.transition_to(SyncJobStatus.PENDING)
        assert job.active_lock is not None


class TestPostingStateMachine:
    def test_table(self):
        assert posting_status.get_allowed_transitions(PostingStatus.CREATED) == [
            PostingStatus.PENDING_MAPPING,
            PostingStatus.READY_TO_POST,
        ]
        assert posting_status.can_transition(PostingStatus.FAILED, PostingStatus.POSTING_REQUESTED)
        assert terminal_states(posting_status.ALLOWED_TRANSITIONS) == [PostingStatus.POSTED]

    def test_posted_cannot_be_reposted(self):
        with pytest.raises(StateTransitionError) as exc_info:
            posting_status.validate_transition(PostingStatus.POSTED, PostingStatus.POSTING_REQUESTED)

        assert exc_info.value.allowed == []

    @pytest.mark.parametrize("current,target", _all_pairs(PostingStatus))
    def test_every_pair(self, current, target):
        posting = Posting.create(
            tenant_id=TENANT_ID,
            idempotency_key="k" * 64,
            reference="A-1",
            posting_type=PostingType.PRODUCT_SALES,
            erp_code="MOCK",
            order_id=uuid.uuid4(),
            now=NOW,
        )
        posting.status = current.value

        if posting_status.can_transition(current, target):
            posting.transition_to(target, NOW)
            assert posting.status == target.value
        else:
            with pytest.raises(StateTransitionError):
                posting.transition_to(target, NOW)
            assert posting.status == current.value


class TestShipmentStateMachines:
    def _shipment(self):
        return Shipment.create(
            tenant_id=TENANT_ID,
            order_id=uuid.uuid4(),
            store_id=uuid.uuid4(),
            marketplace_code="MOCK",
            marketplace_order_id="A-1",
            now=NOW,
        )

    def test_happy_path(self):
        shipment = self._shipment()
        for target in (
            ShipmentStatus.INVOICE_REQUESTED,
            ShipmentStatus.INVOICE_ISSUED,
            ShipmentStatus.MARKET_PUSH_REQUESTED,
            ShipmentStatus.MARKET_PUSHED,
            ShipmentStatus.SHIPPED,
            ShipmentStatus.DELIVERED,
        ):
            shipment.transition_to(target, NOW)

        assert shipment.shipment_status == ShipmentStatus.DELIVERED.value
        assert terminal_states(shipment_status.ALLOWED_TRANSITIONS) == [ShipmentStatus.DELIVERED]

    @pytest.mark.parametrize("current,target", _all_pairs(ShipmentStatus))
    def test_every_shipment_pair(self, current, target):
        shipment = self._shipment()
        shipment.shipment_status = current.value

        if shipment_status.can_transition(current, target):
            shipment.transition_to(target, NOW)
            assert shipment.shipment_status == target.value
        else:
            with pytest.raises(StateTransitionError):
                shipment.transition_to(target, NOW)
            assert shipment.shipment_status == current.value

    @pytest.mark.parametrize("current,target", _all_pairs(MarketPushStatus))
    def test_every_push_pair(self, current, target):
        shipment = self._shipment()
        shipment.market_push_status = current.value

        if shipment_status.can_push_transition(current, target):
            shipment.push_transition_to(target, NOW)
            assert shipment.market_push_status == target.value
        else:
            with pytest.raises(StateTransitionError):
                shipment.push_transition_to(target, NOW)
            assert shipment.market_push_status == current.value

    def test_success_is_terminal(self):
        assert not shipment_status.can_push_transition(MarketPushStatus.SUCCESS, MarketPushStatus.PUSHING)


class TestSettlementStateMachine:
    def _batch(self):
        return SettlementBatch.create(
            tenant_id=TENANT_ID,
            store_id=uuid.uuid4(),
            marketplace_code="MOCK",
            settlement_cycle="WEEKLY",
            period_start=date(2026, 3, 1),
            period_end=date(2026, 3, 7),
            now=NOW,
        )

    def test_failed_only_restarts_from_collected(self):
        """A FAILED batch never resumes at a later step"""
        assert settlement_status.get_allowed_transitions(SettlementStatus.FAILED) == [SettlementStatus.COLLECTED]
        for target in (SettlementStatus.VALIDATED, SettlementStatus.POSTING_READY, SettlementStatus.POSTED):
            assert not settlement_status.can_transition(SettlementStatus.FAILED, target)

    def test_closed_is_terminal(self):
        assert terminal_states(settlement_status.ALLOWED_TRANSITIONS) == [SettlementStatus.CLOSED]

    @pytest.mark.parametrize("current,target", _all_pairs(SettlementStatus))
    def test_every_pair(self, current, target):
        batch = self._batch()
        batch.status = current.value

        if settlement_status.can_transition(current, target):
            batch.transition_to(target, NOW)
            assert batch.status == target.value
        else:
            with pytest.raises(StateTransitionError):
                batch.transition_to(target, NOW)
            assert batch.status == current.value
