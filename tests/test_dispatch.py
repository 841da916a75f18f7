import json
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import PICKUP, FailingNotifier, make_resource

from ambulink.core.dispatch import NO_RESOURCES_REASON, DispatchCoordinator
from ambulink.core.domain import CapabilityTier, Coordinate, Intake, Priority, Requester, RequestState
from ambulink.core.errors import (
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    NoCandidatesError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from ambulink.core.fleet import Fleet
from ambulink.core.matching import FacilityMatcher


@pytest.fixture
def critical_request(coordinator, requester, critical_intake):
    return coordinator.create_request(requester, PICKUP, critical_intake, pickup_address="Connaught Place")


def _in_progress(coordinator, request_id, resource_id="amb-adv"):
    coordinator.accept_request(resource_id, request_id)
    coordinator.issue_code(request_id)
    code = coordinator._store.get(request_id).one_time_code
    return coordinator.verify_code(resource_id, request_id, code)


# =====================================================
#  INTAKE + BROADCAST
# =====================================================

def test_create_request_classifies_and_broadcasts(critical_request, notifier, scheduler):
    assert critical_request.state == RequestState.BROADCASTING
    assert critical_request.priority == Priority.CRITICAL
    assert critical_request.required_tier == CapabilityTier.ADVANCED
    assert critical_request.offered_resource_ids == ["amb-adv", "amb-cc"]
    assert critical_request.broadcast_attempts == 1
    assert critical_request.assigned_resource_id is None
    assert critical_request.fare_quote["total"] == 1500

    for resource_id in ("amb-adv", "amb-cc"):
        [offer] = notifier.messages_for(resource_id, "ride_offer")
        assert offer["variables"]["request_id"] == critical_request.request_id
    assert notifier.messages_for("amb-basic") == []
    assert len(scheduler.pending) == 1


def test_fare_quote_uses_destination(coordinator, requester, critical_intake):
    destination = Coordinate(28.5672, 77.2100)
    request = coordinator.create_request(requester, PICKUP, critical_intake, destination=destination)
    assert request.fare_quote["distance_charge"] > 0
    assert request.fare_quote["total"] > 1500


@pytest.mark.parametrize(
    "requester, pickup",
    [
        (Requester(name="", contact="+91-1"), PICKUP),
        (Requester(name="Asha", contact="  "), PICKUP),
        (Requester(name="Asha", contact="+91-1"), Coordinate(95.0, 77.0)),
        (Requester(name="Asha", contact="+91-1"), Coordinate(28.0, float("nan"))),
    ],
)
def test_invalid_input_is_rejected_before_any_state(coordinator, critical_intake, requester, pickup):
    with pytest.raises(ValidationError):
        coordinator.create_request(requester, pickup, critical_intake)
    assert coordinator.list_requests() == []


def test_unknown_request(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.get_request_status("nope")
    with pytest.raises(NotFoundError):
        coordinator.accept_request("amb-adv", "nope")


def test_no_candidates_retries_then_gives_up(notifier, payments, settings, clock, scheduler, requester, critical_intake):
    coordinator = DispatchCoordinator(Fleet([]), notifier, payments, settings=settings, clock=clock, scheduler=scheduler)
    request = coordinator.create_request(requester, PICKUP, critical_intake)
    assert request.state == RequestState.BROADCASTING
    assert request.broadcast_attempts == 1
    assert request.offered_resource_ids == []
    assert scheduler.pending[0][0] == settings.broadcast_retry_seconds

    scheduler.run_pending()
    scheduler.run_pending()
    assert coordinator.get_request_status(request.request_id).broadcast_attempts == 3
    assert coordinator.get_request_status(request.request_id).state == RequestState.BROADCASTING

    scheduler.run_pending()
    final = coordinator.get_request_status(request.request_id)
    assert final.state == RequestState.CANCELLED
    assert final.cancel_reason == NO_RESOURCES_REASON
    assert notifier.messages_for(requester.contact, "no_resources")
    assert scheduler.pending == []
    coordinator.shutdown()


def test_resource_coming_online_is_picked_up_on_retry(notifier, payments, settings, clock, scheduler, requester, critical_intake):
    fleet = Fleet([])
    coordinator = DispatchCoordinator(fleet, notifier, payments, settings=settings, clock=clock, scheduler=scheduler)
    request = coordinator.create_request(requester, PICKUP, critical_intake)

    fleet.add(make_resource("amb-late", 28.6150, 77.2100, "ADVANCED"))
    scheduler.run_pending()

    status = coordinator.get_request_status(request.request_id)
    assert status.offered_resource_ids == ["amb-late"]
    accepted = coordinator.accept_request("amb-late", request.request_id)
    assert accepted.state == RequestState.ACCEPTED
    coordinator.shutdown()


def test_unanswered_offers_are_rebroadcast_then_cancelled(coordinator, critical_request, scheduler):
    assert scheduler.pending[0][0] == coordinator.settings.offer_timeout_seconds
    scheduler.run_pending()
    scheduler.run_pending()
    assert coordinator.get_request_status(critical_request.request_id).broadcast_attempts == 3
    scheduler.run_pending()
    assert coordinator.get_request_status(critical_request.request_id).state == RequestState.CANCELLED


def test_timer_after_acceptance_is_a_no_op(coordinator, critical_request, scheduler):
    coordinator.accept_request("amb-adv", critical_request.request_id)
    scheduler.run_pending()
    status = coordinator.get_request_status(critical_request.request_id)
    assert status.state == RequestState.ACCEPTED
    assert status.broadcast_attempts == 1


def test_rebroadcast(coordinator, critical_request, notifier):
    candidates = coordinator.rebroadcast(critical_request.request_id)
    assert [c.entity_id for c in candidates] == ["amb-adv", "amb-cc"]
    assert len(notifier.messages_for("amb-adv", "ride_offer")) == 2

    coordinator.accept_request("amb-adv", critical_request.request_id)
    with pytest.raises(ConflictError):
        coordinator.rebroadcast(critical_request.request_id)


def test_rebroadcast_with_nobody_in_range(notifier, payments, settings, clock, scheduler, requester, low_intake):
    coordinator = DispatchCoordinator(Fleet([]), notifier, payments, settings=settings, clock=clock, scheduler=scheduler)
    request = coordinator.create_request(requester, PICKUP, low_intake)
    with pytest.raises(NoCandidatesError):
        coordinator.rebroadcast(request.request_id)
    coordinator.shutdown()


def test_manual_rebroadcast_keeps_automatic_budget(coordinator, critical_request, scheduler):
    request_id = critical_request.request_id
    coordinator.rebroadcast(request_id)
    coordinator.rebroadcast(request_id)

    status = coordinator.get_request_status(request_id)
    assert status.broadcast_attempts == 1
    assert status.manual_broadcasts == 2
    assert len(scheduler.pending) == 1

    scheduler.run_pending()
    scheduler.run_pending()
    status = coordinator.get_request_status(request_id)
    assert status.state == RequestState.BROADCASTING
    assert status.broadcast_attempts == 3

    scheduler.run_pending()
    assert coordinator.get_request_status(request_id).state == RequestState.CANCELLED


def test_preview_stores_and_offers_nothing(coordinator, notifier, critical_intake):
    preview = coordinator.preview(PICKUP, critical_intake, destination=Coordinate(28.5672, 77.2100))
    assert preview["priority"] == Priority.CRITICAL
    assert preview["required_tier"] == CapabilityTier.ADVANCED
    assert [c.entity_id for c in preview["candidates"]] == ["amb-adv", "amb-cc"]
    assert preview["fare_quote"]["total"] > 1500

    assert coordinator.list_requests() == []
    assert notifier.outbox == []
    with pytest.raises(ValidationError):
        coordinator.preview(Coordinate(95.0, 0.0), critical_intake)


def test_failed_notifications_do_not_roll_back(fleet, payments, settings, clock, scheduler, requester, critical_intake):
    notifier = FailingNotifier()
    coordinator = DispatchCoordinator(fleet, notifier, payments, settings=settings, clock=clock, scheduler=scheduler)
    request = coordinator.create_request(requester, PICKUP, critical_intake)
    assert request.state == RequestState.BROADCASTING

    accepted = coordinator.accept_request("amb-cc", request.request_id)
    assert accepted.state == RequestState.ACCEPTED
    assert notifier.calls >= 3
    coordinator.shutdown()


# =====================================================
#  ACCEPTANCE
# =====================================================

def test_accept_assigns_and_claims(coordinator, critical_request, fleet, notifier, requester):
    accepted = coordinator.accept_request("amb-adv", critical_request.request_id)
    assert accepted.state == RequestState.ACCEPTED
    assert accepted.assigned_resource_id == "amb-adv"
    assert accepted.accepted_at is not None
    assert fleet.get("amb-adv").available is False
    assert fleet.get("amb-adv").current_request_id == critical_request.request_id

    [msg] = notifier.messages_for(requester.contact, "resource_assigned")
    assert msg["variables"]["vehicle_number"] == "DL-amb-adv"


def test_second_accept_conflicts(coordinator, critical_request, fleet):
    coordinator.accept_request("amb-adv", critical_request.request_id)
    with pytest.raises(ConflictError) as exc:
        coordinator.accept_request("amb-cc", critical_request.request_id)
    assert exc.value.reason == "ALREADY_ASSIGNED"
    assert coordinator.get_request_status(critical_request.request_id).assigned_resource_id == "amb-adv"
    assert fleet.get("amb-cc").available is True


def test_accept_requires_an_offer(coordinator, critical_request):
    with pytest.raises(ConflictError) as exc:
        coordinator.accept_request("amb-basic", critical_request.request_id)
    assert exc.value.reason == "NOT_OFFERED"
    with pytest.raises(NotFoundError):
        coordinator.accept_request("amb-ghost", critical_request.request_id)


def test_concurrent_accepts_have_exactly_one_winner(coordinator, requester, low_intake, fleet):
    request = coordinator.create_request(requester, PICKUP, low_intake)
    contenders = request.offered_resource_ids
    assert len(contenders) == 3
    barrier = threading.Barrier(len(contenders))

    def accept(resource_id):
        barrier.wait()
        try:
            coordinator.accept_request(resource_id, request.request_id)
            return "ok"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=len(contenders)) as pool:
        outcomes = list(pool.map(accept, contenders))

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == len(contenders) - 1

    status = coordinator.get_request_status(request.request_id)
    winner = contenders[outcomes.index("ok")]
    assert status.assigned_resource_id == winner
    busy = [r.resource_id for r in fleet.all() if not r.available]
    assert busy == [winner]


def test_resource_cannot_be_double_booked_across_requests(coordinator, requester, critical_intake, fleet):
    first = coordinator.create_request(requester, PICKUP, critical_intake)
    second = coordinator.create_request(requester, PICKUP, critical_intake)
    assert "amb-adv" in second.offered_resource_ids

    coordinator.accept_request("amb-adv", first.request_id)
    with pytest.raises(ConflictError) as exc:
        coordinator.accept_request("amb-adv", second.request_id)
    assert exc.value.reason == "RESOURCE_BUSY"

    status = coordinator.get_request_status(second.request_id)
    assert status.state == RequestState.BROADCASTING
    assert status.assigned_resource_id is None
    assert fleet.get("amb-adv").current_request_id == first.request_id


def test_cancel_racing_accept_leaves_resources_free(coordinator, requester, critical_intake, fleet):
    for _ in range(10):
        request = coordinator.create_request(requester, PICKUP, critical_intake)
        barrier = threading.Barrier(2)

        def accept():
            barrier.wait()
            try:
                coordinator.accept_request("amb-adv", request.request_id)
            except ConflictError:
                pass

        def cancel():
            barrier.wait()
            coordinator.cancel_request(request.request_id, "caller hung up")

        with ThreadPoolExecutor(max_workers=2) as pool:
            for f in [pool.submit(accept), pool.submit(cancel)]:
                f.result()

        assert coordinator.get_request_status(request.request_id).state == RequestState.CANCELLED
        assert all(r.available for r in fleet.all())


# =====================================================
#  ONE-TIME CODE
# =====================================================

def test_issue_code_goes_to_requester_only(coordinator, critical_request, notifier, requester, clock):
    with pytest.raises(ConflictError):
        coordinator.issue_code(critical_request.request_id)

    coordinator.accept_request("amb-adv", critical_request.request_id)
    issued = coordinator.issue_code(critical_request.request_id)

    assert set(issued) == {"request_id", "expires_at"}
    assert issued["expires_at"] == clock.now + timedelta(minutes=5)
    [msg] = notifier.messages_for(requester.contact, "ride_code")
    assert msg["variables"]["code"] == "4821"
    assert all("code" not in m["variables"] for m in notifier.messages_for("amb-adv"))

    status = coordinator.get_request_status(critical_request.request_id)
    assert status.state == RequestState.CODE_ISSUED
    assert status.code_pending
    assert "one_time_code" not in repr(status)


def test_verify_code(coordinator, critical_request):
    request_id = critical_request.request_id
    coordinator.accept_request("amb-adv", request_id)
    coordinator.issue_code(request_id)

    for wrong in ("1234", "48210", "abcd", ""):
        with pytest.raises(InvalidCodeError):
            coordinator.verify_code("amb-adv", request_id, wrong)
    assert coordinator.get_request_status(request_id).state == RequestState.CODE_ISSUED

    with pytest.raises(ConflictError) as exc:
        coordinator.verify_code("amb-cc", request_id, "4821")
    assert exc.value.reason == "NOT_ASSIGNED"

    started = coordinator.verify_code("amb-adv", request_id, " 4821 ")
    assert started.state == RequestState.IN_PROGRESS
    assert started.one_time_code is None
    assert started.code_expires_at is None
    assert started.started_at is not None

    with pytest.raises(ConflictError):
        coordinator.verify_code("amb-adv", request_id, "4821")


def test_expired_code_is_rejected_and_can_be_reissued(coordinator, critical_request, clock):
    request_id = critical_request.request_id
    coordinator.accept_request("amb-adv", request_id)
    coordinator.issue_code(request_id)

    clock.advance(minutes=5)
    with pytest.raises(ExpiredError):
        coordinator.verify_code("amb-adv", request_id, "4821")
    status = coordinator.get_request_status(request_id)
    assert status.state == RequestState.CODE_ISSUED
    assert not status.code_pending

    issued = coordinator.issue_code(request_id)
    assert issued["expires_at"] == clock.now + timedelta(minutes=5)
    with pytest.raises(InvalidCodeError):
        coordinator.verify_code("amb-adv", request_id, "4821")
    started = coordinator.verify_code("amb-adv", request_id, "7305")
    assert started.state == RequestState.IN_PROGRESS
    assert started.codes_issued == 2


def test_status_lookup_clears_a_lapsed_code(coordinator, critical_request, clock):
    coordinator.accept_request("amb-adv", critical_request.request_id)
    coordinator.issue_code(critical_request.request_id)
    clock.advance(minutes=6)
    status = coordinator.get_request_status(critical_request.request_id)
    assert status.one_time_code is None
    assert not status.code_pending


def test_code_never_reaches_audit_log(coordinator, critical_request):
    _in_progress(coordinator, critical_request.request_id)
    log_file = Path(os.environ["AUDIT_LOG_DIR"]) / "audit.log"
    for line in log_file.read_text(encoding="utf-8").splitlines():
        record = json.loads(line)
        assert "code" not in record
        variables = record.get("variables") or {}
        assert variables.get("code") in (None, "****")


# =====================================================
#  SETTLEMENT + CANCELLATION
# =====================================================

def test_complete_is_idempotent(coordinator, critical_request, fleet, payments):
    request_id = critical_request.request_id
    with pytest.raises(ConflictError):
        coordinator.complete_request(request_id, 500)

    _in_progress(coordinator, request_id)
    first = coordinator.complete_request(request_id, 500)
    assert first.state == RequestState.COMPLETED
    assert first.fare_paid == 500
    assert first.assigned_resource_id == "amb-adv"
    assert first.completed_at is not None

    second = coordinator.complete_request(request_id, 900)
    assert second == first

    resource = fleet.get("amb-adv")
    assert resource.available is True
    assert resource.current_request_id is None
    assert resource.completed_trips == 1
    assert resource.earnings == 500
    assert payments.calls == [(request_id, 500.0)]


def test_complete_defaults_to_quoted_fare(coordinator, critical_request):
    _in_progress(coordinator, critical_request.request_id)
    done = coordinator.complete_request(critical_request.request_id)
    assert done.fare_paid == critical_request.fare_quote["total"]


def test_failed_settlement_blocks_completion(coordinator, critical_request, fleet, payments):
    request_id = critical_request.request_id
    _in_progress(coordinator, request_id)

    payments.ok = False
    with pytest.raises(SettlementError):
        coordinator.complete_request(request_id, 500)
    assert coordinator.get_request_status(request_id).state == RequestState.IN_PROGRESS
    assert fleet.get("amb-adv").available is False

    payments.ok = True
    assert coordinator.complete_request(request_id, 500).state == RequestState.COMPLETED


def test_negative_fare_is_rejected(coordinator, critical_request):
    _in_progress(coordinator, critical_request.request_id)
    with pytest.raises(ValidationError):
        coordinator.complete_request(critical_request.request_id, -10)


def test_cancel_releases_resource_and_is_final(coordinator, critical_request, fleet, notifier):
    request_id = critical_request.request_id
    coordinator.accept_request("amb-adv", request_id)
    cancelled = coordinator.cancel_request(request_id, "patient self-transported")

    assert cancelled.state == RequestState.CANCELLED
    assert cancelled.cancel_reason == "patient self-transported"
    assert cancelled.assigned_resource_id == "amb-adv"
    assert fleet.get("amb-adv").available is True
    assert notifier.messages_for("amb-adv", "request_cancelled")

    for call in (
        lambda: coordinator.cancel_request(request_id),
        lambda: coordinator.accept_request("amb-cc", request_id),
        lambda: coordinator.issue_code(request_id),
        lambda: coordinator.complete_request(request_id, 500),
    ):
        with pytest.raises(ConflictError):
            call()


def test_cancel_in_progress_ride(coordinator, critical_request, fleet):
    _in_progress(coordinator, critical_request.request_id)
    cancelled = coordinator.cancel_request(critical_request.request_id, "")
    assert cancelled.cancel_reason == "not specified"
    assert fleet.get("amb-adv").completed_trips == 0
    assert fleet.get("amb-adv").available is True


# =====================================================
#  HOUSEKEEPING
# =====================================================

def test_sweep_archives_settled_requests(coordinator, critical_request, clock):
    request_id = critical_request.request_id
    _in_progress(coordinator, request_id)
    coordinator.complete_request(request_id, 500)

    assert coordinator.sweep()["archived"] == 0
    clock.advance(minutes=61)
    assert coordinator.sweep()["archived"] == 1
    assert coordinator._store.is_archived(request_id)
    assert coordinator.get_request_status(request_id).state == RequestState.COMPLETED
    assert [r.request_id for r in coordinator.list_requests(RequestState.COMPLETED)] == [request_id]


def test_sweep_forgets_archived_requests_after_purge_horizon(coordinator, critical_request, clock):
    request_id = critical_request.request_id
    _in_progress(coordinator, request_id)
    coordinator.complete_request(request_id, 500)

    clock.advance(minutes=61)
    assert coordinator.sweep()["archived"] == 1
    clock.advance(minutes=coordinator.settings.purge_after_minutes)
    assert coordinator.sweep()["purged"] == 1

    with pytest.raises(NotFoundError):
        coordinator.get_request_status(request_id)
    assert coordinator.list_requests() == []
    assert coordinator.sweep()["purged"] == 0


def test_sweep_clears_lapsed_codes(coordinator, critical_request, clock):
    coordinator.accept_request("amb-adv", critical_request.request_id)
    coordinator.issue_code(critical_request.request_id)
    clock.advance(minutes=6)
    assert coordinator.sweep()["expired_codes"] == 1
    assert coordinator.sweep()["expired_codes"] == 0


def test_end_to_end_cardiac_scenario(coordinator, requester, fleet, directory):

    intake = Intake(category="CARDIAC", conscious=True, breathing=True, symptoms="chest pain")
    request = coordinator.create_request(requester, PICKUP, intake)
    assert request.priority in (Priority.HIGH, Priority.CRITICAL)

    ranked = FacilityMatcher(directory).recommend(PICKUP, "cardiac", request.priority)
    assert ranked[0].entity_id == "fac-cardiac"

    barrier = threading.Barrier(2)

    def accept(resource_id):
        barrier.wait()
        try:
            return coordinator.accept_request(resource_id, request.request_id)
        except ConflictError:
            return None

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(accept, ["amb-adv", "amb-cc"]))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    winner = winners[0].assigned_resource_id

    coordinator.issue_code(request.request_id)
    with pytest.raises(InvalidCodeError):
        coordinator.verify_code(winner, request.request_id, "0000")
    coordinator.verify_code(winner, request.request_id, "4821")

    done = coordinator.complete_request(request.request_id, 500)
    assert done.state == RequestState.COMPLETED
    assert fleet.get(winner).available is True
