from typing import Iterable, List

from schemas import PickupRequest


def visible_requests(declared_types: Iterable[str], pending: Iterable[PickupRequest]) -> List[PickupRequest]:
    """Pending requests a vendor may see.

    A vendor without declared waste types sees every pending request. Otherwise only
    requests for a declared type are visible.
    """
    declared = set(declared_types or [])
    pending = [r for r in pending if r.status == "pending"]
    if not declared:
        return pending
    return [r for r in pending if r.waste_type in declared]
