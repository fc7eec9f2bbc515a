"""
Pickup request lifecycle.

    pending -> accepted -> assigned -> in_progress -> completed
    pending -> declined | cancelled

Every operation takes the acting identity explicitly. Status writes are
conditioned on the status that was read, so a concurrent writer makes the
slower caller fail with InvalidStateTransition instead of overwriting.
"""
import logging
import math
import os
from datetime import date, time
from typing import Dict, List, Optional, Tuple

from auth import require_role
from billing import bill_for_request, resolve_rate
from errors import AuthorizationDenied, InvalidStateTransition, ValidationError
from repositories import Repositories, UnitOfWork
from schemas import WASTE_TYPES, WEIGHT_CATEGORIES, Bill, Identity, PickupRequest
from storage import LocalFileStorage, photo_extension, upload_waste_photo

logger = logging.getLogger(__name__)

ALLOW_CANCEL_AFTER_ACCEPT = os.getenv("ALLOW_CANCEL_AFTER_ACCEPT", "false").lower() in ("1", "true", "yes")

TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["accepted", "declined", "cancelled"],
    "accepted": ["assigned"],
    "assigned": ["in_progress"],
    "in_progress": ["completed"],
    "completed": [],
    "cancelled": [],
    "declined": [],
}
TERMINAL_STATUSES = [s for s, targets in TRANSITIONS.items() if not targets]


def can_transition(current: str, target: str, allow_cancel_after_accept: Optional[bool] = None) -> bool:
    if allow_cancel_after_accept is None:
        allow_cancel_after_accept = ALLOW_CANCEL_AFTER_ACCEPT
    if target == "cancelled" and allow_cancel_after_accept and current in ("accepted", "assigned"):
        return True
    return target in TRANSITIONS.get(current, [])


def _transition(repos: Repositories, request: PickupRequest, target: str,
                changes: Optional[dict] = None, unset: Optional[List[str]] = None,
                uow: Optional[UnitOfWork] = None) -> PickupRequest:
    if not can_transition(request.status, target):
        raise InvalidStateTransition(request.status, target)

    swapped = repos.requests.compare_and_set(
        request.id, [request.status], {"status": target, **(changes or {})}, unset
    )
    if not swapped:
        current = repos.requests.get(request.id).status
        raise InvalidStateTransition(current, target, "request was updated by someone else")
    if uow is not None:
        uow.on_rollback(lambda: _revert(repos, request, target, changes or {}))

    logger.info("Request %s: %s -> %s", request.id, request.status, target)
    return repos.requests.get(request.id)


def _revert(repos: Repositories, request: PickupRequest, target: str, changes: dict) -> None:
    restore = {"status": request.status}
    cleared = []
    for field in changes:
        previous = getattr(request, field, None)
        if previous is None:
            cleared.append(field)
        else:
            restore[field] = previous
    repos.requests.compare_and_set(request.id, [target], restore, unset=cleared or None)
    logger.warning("Request %s reverted from %s to %s", request.id, target, request.status)


def _is_weight(value) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and math.isfinite(value)


def _assigned_to(identity: Identity, request: PickupRequest) -> None:
    if request.assigned_vendor_id != identity.id:
        raise AuthorizationDenied("Request is assigned to another vendor")


# ------------------ Citizen actions ------------------
def submit_request(repos: Repositories, identity: Identity, waste_type: Optional[str], weight_category: Optional[str],
                   approximate_weight: Optional[float] = None, citizen_location: Optional[str] = None,
                   photo: Optional[bytes] = None, storage: Optional[LocalFileStorage] = None) -> PickupRequest:
    require_role(identity, "citizen")
    if not waste_type:
        raise ValidationError("waste_type is required")
    if waste_type not in WASTE_TYPES:
        raise ValidationError(f"Unknown waste type '{waste_type}'")
    if not weight_category:
        raise ValidationError("weight_category is required")
    if weight_category not in WEIGHT_CATEGORIES:
        raise ValidationError(f"Unknown weight category '{weight_category}'")
    if approximate_weight is not None and (not _is_weight(approximate_weight) or approximate_weight < 0):
        raise ValidationError("approximate_weight must be a finite, non-negative number")
    if photo:
        if storage is None:
            raise ValidationError("Photo uploads are not configured")
        photo_extension(photo)

    try:
        draft = PickupRequest(
            citizen_id=identity.id,
            waste_type=waste_type,
            weight_category=weight_category,
            approximate_weight=approximate_weight,
            citizen_location=citizen_location,
            status="pending",
        )
    except ValueError as e:
        raise ValidationError(str(e)) from e
    request = repos.requests.create(draft)
    logger.info("Citizen %s submitted request %s (%s, %s)", identity.id, request.id, waste_type, weight_category)

    if photo:
        with UnitOfWork("submit request") as uow:
            uow.on_rollback(lambda: repos.requests.delete(request.id))
            url = upload_waste_photo(storage, request.id, photo)
            repos.requests.set_photo_url(request.id, url)
        request = repos.requests.get(request.id)
    return request


def cancel_request(repos: Repositories, identity: Identity, request_id: str) -> PickupRequest:
    require_role(identity, "citizen")
    request = repos.requests.get(request_id)
    if request.citizen_id != identity.id:
        raise AuthorizationDenied("Request belongs to another citizen")
    return _transition(repos, request, "cancelled")


# ------------------ Vendor actions ------------------
def accept_request(repos: Repositories, identity: Identity, request_id: str) -> PickupRequest:
    require_role(identity, "vendor")
    request = repos.requests.get(request_id)
    return _transition(repos, request, "accepted", {"assigned_vendor_id": identity.id})


def decline_request(repos: Repositories, identity: Identity, request_id: str) -> PickupRequest:
    require_role(identity, "vendor")
    request = repos.requests.get(request_id)
    return _transition(repos, request, "declined")


def schedule_pickup(repos: Repositories, identity: Identity, request_id: str,
                    pickup_date: Optional[date], pickup_time: Optional[time]) -> PickupRequest:
    require_role(identity, "vendor")
    request = repos.requests.get(request_id)
    if not can_transition(request.status, "assigned"):
        raise InvalidStateTransition(request.status, "assigned")
    _assigned_to(identity, request)
    if pickup_date is None or pickup_time is None:
        raise InvalidStateTransition(request.status, "assigned", "pickup date and time are both required")
    return _transition(repos, request, "assigned", {
        "assigned_vendor_id": identity.id,
        "pickup_date": pickup_date.isoformat(),
        "pickup_time": pickup_time.strftime("%H:%M"),
    })


def start_pickup(repos: Repositories, identity: Identity, request_id: str) -> PickupRequest:
    require_role(identity, "vendor")
    request = repos.requests.get(request_id)
    if not can_transition(request.status, "in_progress"):
        raise InvalidStateTransition(request.status, "in_progress")
    _assigned_to(identity, request)
    return _transition(repos, request, "in_progress")


def complete_pickup(repos: Repositories, identity: Identity, request_id: str,
                    actual_weight: Optional[float]) -> Tuple[PickupRequest, Bill]:
    """Record the measured weight and settle the bill.

    The status write and the bill insert form one unit of work: if the bill
    cannot be stored the request goes back to in_progress.
    """
    require_role(identity, "vendor")
    request = repos.requests.get(request_id)
    if not can_transition(request.status, "completed"):
        raise InvalidStateTransition(request.status, "completed")
    _assigned_to(identity, request)
    if not _is_weight(actual_weight) or actual_weight <= 0:
        raise InvalidStateTransition(request.status, "completed", "actual_weight must be a positive, finite number")

    rate = resolve_rate(repos.vendor_rates, identity.id, request.waste_type)

    with UnitOfWork("complete pickup") as uow:
        completed = _transition(repos, request, "completed", {"actual_weight": float(actual_weight)}, uow=uow)
        bill = repos.bills.insert(bill_for_request(completed, rate))

    logger.info("Bill %s issued for request %s: net %.2f", bill.id, request.id, bill.net_amount)
    return completed, bill


# ------------------ Maintenance ------------------
def reconcile_missing_bills(repos: Repositories) -> List[Bill]:
    """Issue bills for completed requests that never got one."""
    completed = repos.requests.with_status(["completed"])
    if not completed:
        return []
    billed = repos.bills.billed_request_ids([r.id for r in completed])
    issued = []
    for request in completed:
        if request.id in billed:
            continue
        logger.warning("Request %s completed without a bill, issuing it now", request.id)
        rate = resolve_rate(repos.vendor_rates, request.assigned_vendor_id, request.waste_type)
        try:
            issued.append(repos.bills.insert(bill_for_request(request, rate)))
        except ValidationError as e:
            logger.error("Cannot bill request %s: %s", request.id, e.message)
    return issued
