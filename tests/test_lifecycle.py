import io
from datetime import date, time

import pytest
from PIL import Image

import lifecycle
from errors import AuthorizationDenied, InvalidStateTransition, ProviderError, ValidationError, NotFound
from schemas import REQUEST_STATUSES


def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (0, 128, 0)).save(buf, "PNG")
    return buf.getvalue()


def submit(repos, citizen, waste_type="plastic", weight_category="medium"):
    return lifecycle.submit_request(repos, citizen, waste_type, weight_category)


def to_in_progress(repos, citizen, vendor):
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    lifecycle.schedule_pickup(repos, vendor, request.id, date(2026, 11, 2), time(9, 30))
    return lifecycle.start_pickup(repos, vendor, request.id)


def assert_invariants(repos, request_id):
    request = repos.requests.get(request_id)
    assert request.status in REQUEST_STATUSES
    if request.status == "pending":
        assert request.assigned_vendor_id is None
    if request.status in ("accepted", "assigned", "in_progress", "completed"):
        assert request.assigned_vendor_id is not None
    assert (request.actual_weight is not None) == (request.status == "completed")
    bill = repos.bills.for_request(request_id)
    assert (bill is not None) == (request.status == "completed")


def test_submit_creates_pending_request(repos, citizen):
    request = submit(repos, citizen)
    assert request.status == "pending"
    assert request.assigned_vendor_id is None
    assert request.citizen_id == citizen.id
    assert_invariants(repos, request.id)


def test_submit_requires_weight_category(repos, citizen):
    with pytest.raises(ValidationError):
        lifecycle.submit_request(repos, citizen, "plastic", None)
    assert repos.requests.with_status(["pending"]) == []


@pytest.mark.parametrize("waste_type,weight_category", [("wood", "small"), ("plastic", "huge"), (None, "small")])
def test_submit_rejects_unknown_values(repos, citizen, waste_type, weight_category):
    with pytest.raises(ValidationError):
        lifecycle.submit_request(repos, citizen, waste_type, weight_category)


def test_vendor_cannot_submit(repos, vendor):
    with pytest.raises(AuthorizationDenied):
        submit(repos, vendor)


def test_submit_with_photo_stores_public_url(repos, citizen, storage, tmp_path):
    request = lifecycle.submit_request(repos, citizen, "glass", "small", approximate_weight=2.5,
                                       photo=png_bytes(), storage=storage)
    assert request.waste_photo_url == f"/files/waste-photos/waste-photos/{request.id}.png"
    assert (tmp_path / "waste-photos" / "waste-photos" / f"{request.id}.png").exists()


def test_submit_rejects_non_image_photo(repos, citizen, storage):
    with pytest.raises(ValidationError):
        lifecycle.submit_request(repos, citizen, "glass", "small", photo=b"not an image", storage=storage)
    assert repos.requests.with_status(["pending"]) == []


def test_failed_photo_upload_removes_request(repos, citizen, storage, monkeypatch):
    def broken_upload(bucket, path, data):
        raise ProviderError("disk full")

    monkeypatch.setattr(storage, "upload", broken_upload)
    with pytest.raises(ProviderError):
        lifecycle.submit_request(repos, citizen, "glass", "small", photo=png_bytes(), storage=storage)
    assert repos.requests.with_status(["pending"]) == []


def test_full_lifecycle_generates_one_bill(repos, citizen, vendor):
    request = submit(repos, citizen)

    accepted = lifecycle.accept_request(repos, vendor, request.id)
    assert accepted.status == "accepted"
    assert accepted.assigned_vendor_id == vendor.id
    assert_invariants(repos, request.id)

    scheduled = lifecycle.schedule_pickup(repos, vendor, request.id, date(2026, 11, 2), time(9, 30))
    assert scheduled.status == "assigned"
    assert (scheduled.pickup_date, scheduled.pickup_time) == ("2026-11-02", "09:30")

    started = lifecycle.start_pickup(repos, vendor, request.id)
    assert started.status == "in_progress"
    assert_invariants(repos, request.id)

    completed, bill = lifecycle.complete_pickup(repos, vendor, request.id, 10.0)
    assert completed.status == "completed"
    assert completed.actual_weight == 10.0
    assert (bill.gross_amount, bill.platform_fee, bill.net_amount) == (50.0, 10.0, 40.0)
    assert bill.request_id == request.id
    assert bill.vendor_id == vendor.id
    assert bill.citizen_id == citizen.id
    assert_invariants(repos, request.id)
    assert len(repos.bills.for_vendor(vendor.id)) == 1


def test_citizen_cancels_pending_request(repos, citizen):
    request = submit(repos, citizen)
    cancelled = lifecycle.cancel_request(repos, citizen, request.id)
    assert cancelled.status == "cancelled"
    assert cancelled.assigned_vendor_id is None


def test_cancel_after_accept_is_rejected(repos, citizen, vendor):
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    before = repos.requests.get(request.id)

    with pytest.raises(InvalidStateTransition):
        lifecycle.cancel_request(repos, citizen, request.id)
    assert repos.requests.get(request.id) == before


def test_cancel_after_accept_when_policy_allows(repos, citizen, vendor, monkeypatch):
    monkeypatch.setattr(lifecycle, "ALLOW_CANCEL_AFTER_ACCEPT", True)
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    assert lifecycle.cancel_request(repos, citizen, request.id).status == "cancelled"


def test_cancel_by_other_citizen_is_denied(repos, citizen, other_citizen):
    request = submit(repos, citizen)
    with pytest.raises(AuthorizationDenied):
        lifecycle.cancel_request(repos, other_citizen, request.id)
    assert repos.requests.get(request.id).status == "pending"


def test_vendor_declines_pending_request(repos, citizen, vendor):
    request = submit(repos, citizen)
    declined = lifecycle.decline_request(repos, vendor, request.id)
    assert declined.status == "declined"
    with pytest.raises(InvalidStateTransition):
        lifecycle.accept_request(repos, vendor, request.id)


def test_citizen_cannot_accept(repos, citizen):
    request = submit(repos, citizen)
    with pytest.raises(AuthorizationDenied):
        lifecycle.accept_request(repos, citizen, request.id)


def test_second_accept_loses(repos, citizen, vendor, other_vendor):
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    with pytest.raises(InvalidStateTransition):
        lifecycle.accept_request(repos, other_vendor, request.id)
    assert repos.requests.get(request.id).assigned_vendor_id == vendor.id


def test_concurrent_accept_with_stale_read(repos, citizen, vendor, other_vendor):
    request = submit(repos, citizen)
    stale_a = repos.requests.get(request.id)
    stale_b = repos.requests.get(request.id)

    lifecycle._transition(repos, stale_a, "accepted", {"assigned_vendor_id": vendor.id})
    with pytest.raises(InvalidStateTransition):
        lifecycle._transition(repos, stale_b, "accepted", {"assigned_vendor_id": other_vendor.id})

    stored = repos.requests.get(request.id)
    assert stored.status == "accepted"
    assert stored.assigned_vendor_id == vendor.id


def test_schedule_requires_date_and_time(repos, citizen, vendor):
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    with pytest.raises(InvalidStateTransition):
        lifecycle.schedule_pickup(repos, vendor, request.id, date(2026, 11, 2), None)
    assert repos.requests.get(request.id).status == "accepted"


def test_only_assigned_vendor_can_schedule(repos, citizen, vendor, other_vendor):
    request = submit(repos, citizen)
    lifecycle.accept_request(repos, vendor, request.id)
    with pytest.raises(AuthorizationDenied):
        lifecycle.schedule_pickup(repos, other_vendor, request.id, date(2026, 11, 2), time(8, 0))


def test_cannot_skip_states(repos, citizen, vendor):
    request = submit(repos, citizen)
    with pytest.raises(InvalidStateTransition):
        lifecycle.start_pickup(repos, vendor, request.id)
    with pytest.raises(InvalidStateTransition):
        lifecycle.complete_pickup(repos, vendor, request.id, 3.0)
    lifecycle.accept_request(repos, vendor, request.id)
    with pytest.raises(InvalidStateTransition):
        lifecycle.start_pickup(repos, vendor, request.id)
    assert_invariants(repos, request.id)


@pytest.mark.parametrize("weight", [None, 0, -1.5, "ten", float("nan"), float("inf"), float("-inf")])
def test_complete_requires_positive_weight(repos, citizen, vendor, weight):
    request = to_in_progress(repos, citizen, vendor)
    with pytest.raises(InvalidStateTransition):
        lifecycle.complete_pickup(repos, vendor, request.id, weight)
    assert_invariants(repos, request.id)


def test_completed_is_terminal(repos, citizen, vendor):
    request = to_in_progress(repos, citizen, vendor)
    lifecycle.complete_pickup(repos, vendor, request.id, 4.0)
    with pytest.raises(InvalidStateTransition):
        lifecycle.complete_pickup(repos, vendor, request.id, 4.0)
    assert len(repos.bills.for_vendor(vendor.id)) == 1


def test_completion_uses_default_rate_when_unconfigured(repos, citizen, other_vendor):
    request = submit(repos, citizen, waste_type="organic")
    lifecycle.accept_request(repos, other_vendor, request.id)
    lifecycle.schedule_pickup(repos, other_vendor, request.id, date(2026, 11, 2), time(9, 30))
    lifecycle.start_pickup(repos, other_vendor, request.id)
    _, bill = lifecycle.complete_pickup(repos, other_vendor, request.id, 3.0)
    assert bill.rate_per_kg == 5.0
    assert bill.net_amount == 5.0


def test_failed_bill_insert_rolls_back_completion(repos, citizen, vendor, monkeypatch):
    request = to_in_progress(repos, citizen, vendor)

    def broken_insert(bill):
        raise ProviderError("bill insert failed")

    monkeypatch.setattr(repos.bills, "insert", broken_insert)
    with pytest.raises(ProviderError):
        lifecycle.complete_pickup(repos, vendor, request.id, 6.0)

    stored = repos.requests.get(request.id)
    assert stored.status == "in_progress"
    assert stored.actual_weight is None


def test_reconcile_issues_missing_bills(repos, citizen, vendor):
    request = to_in_progress(repos, citizen, vendor)
    repos.requests.compare_and_set(request.id, ["in_progress"], {"status": "completed", "actual_weight": 8.0})
    assert repos.bills.for_request(request.id) is None

    issued = lifecycle.reconcile_missing_bills(repos)
    assert [b.request_id for b in issued] == [request.id]
    assert issued[0].gross_amount == 40.0
    assert lifecycle.reconcile_missing_bills(repos) == []


def test_unknown_request_id(repos, vendor):
    with pytest.raises(NotFound):
        lifecycle.accept_request(repos, vendor, "not-an-id")
    with pytest.raises(NotFound):
        lifecycle.accept_request(repos, vendor, "64b7f0f0f0f0f0f0f0f0f0f0")


def test_transition_table_has_no_way_out_of_terminal_states():
    for status in lifecycle.TERMINAL_STATUSES:
        for target in REQUEST_STATUSES:
            assert not lifecycle.can_transition(status, target)
    assert sorted(lifecycle.TERMINAL_STATUSES) == ["cancelled", "completed", "declined"]


@pytest.mark.parametrize("weight", [float("nan"), float("inf"), -0.5])
def test_submit_rejects_bad_approximate_weight(repos, citizen, weight):
    with pytest.raises(ValidationError):
        lifecycle.submit_request(repos, citizen, "paper", "small", approximate_weight=weight)
    assert repos.requests.with_status(["pending"]) == []


def test_failed_reread_after_completion_rolls_back(repos, citizen, vendor, monkeypatch):
    request = to_in_progress(repos, citizen, vendor)
    original_get = repos.requests.get
    calls = []

    def flaky_get(request_id):
        calls.append(request_id)
        if len(calls) == 2:
            raise ProviderError("read failed")
        return original_get(request_id)

    monkeypatch.setattr(repos.requests, "get", flaky_get)
    with pytest.raises(ProviderError):
        lifecycle.complete_pickup(repos, vendor, request.id, 6.0)
    monkeypatch.undo()

    stored = repos.requests.get(request.id)
    assert stored.status == "in_progress"
    assert stored.actual_weight is None
    assert repos.bills.for_request(request.id) is None


def test_reconcile_skips_requests_it_cannot_bill(repos, citizen, vendor):
    broken = to_in_progress(repos, citizen, vendor)
    repos.requests.compare_and_set(broken.id, ["in_progress"], {"status": "completed"})
    good = to_in_progress(repos, citizen, vendor)
    repos.requests.compare_and_set(good.id, ["in_progress"], {"status": "completed", "actual_weight": 2.0})

    issued = lifecycle.reconcile_missing_bills(repos)
    assert [b.request_id for b in issued] == [good.id]
    assert repos.bills.for_request(broken.id) is None
