"""
Typed repositories over the MongoDB collections.

Each repository exposes one method per query shape the lifecycle needs, so
collection names and filter keys live here and nowhere else. Driver errors
surface as ProviderError.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document
from errors import NotFound, PickupError, ProviderError, ValidationError
from schemas import Bill, PickupRequest, Profile, VendorWasteType

logger = logging.getLogger(__name__)


def to_str_id(doc):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def to_object_id(value: str, kind: str = "Document") -> ObjectId:
    if not value or not ObjectId.is_valid(value):
        raise NotFound(f"{kind} '{value}' not found")
    return ObjectId(value)


@contextmanager
def provider_call(action: str):
    try:
        yield
    except PyMongoError as e:
        logger.error("Database call failed during %s: %s", action, e)
        raise ProviderError(f"Database error during {action}: {str(e)[:80]}") from e


def _now():
    return datetime.now(timezone.utc)


class ProfileRepository:
    collection = "profile"

    def __init__(self, database: Database):
        self.database = database
        self.col = database[self.collection]

    def get(self, profile_id: str) -> Profile:
        oid = to_object_id(profile_id, "Profile")
        with provider_call("profile lookup"):
            doc = self.col.find_one({"_id": oid}, {"password_hash": 0})
        if not doc:
            raise NotFound(f"Profile '{profile_id}' not found")
        return Profile(**to_str_id(doc))

    def find_credentials(self, email: str) -> Optional[Dict[str, Any]]:
        with provider_call("credential lookup"):
            doc = self.col.find_one({"email": email})
        return to_str_id(doc) if doc else None

    def email_taken(self, email: str) -> bool:
        with provider_call("email check"):
            return self.col.count_documents({"email": email}, limit=1) > 0

    def create(self, profile: Profile, password_hash: str) -> Profile:
        data = profile.model_dump(exclude={"id"})
        data["password_hash"] = password_hash
        with provider_call("profile insert"):
            try:
                pid = create_document(self.collection, data, database=self.database)
            except DuplicateKeyError as e:
                raise ValidationError("Email already registered") from e
        return self.get(pid)


class VendorWasteTypeRepository:
    collection = "vendor_waste_type"

    def __init__(self, database: Database):
        self.database = database
        self.col = database[self.collection]

    def for_vendor(self, vendor_id: str) -> List[VendorWasteType]:
        with provider_call("vendor waste type lookup"):
            docs = list(self.col.find({"vendor_id": vendor_id}).sort("waste_type", 1))
        return [VendorWasteType(**to_str_id(d)) for d in docs]

    def declared_types(self, vendor_id: str) -> Set[str]:
        return {wt.waste_type for wt in self.for_vendor(vendor_id)}

    def rate_for(self, vendor_id: str, waste_type: str) -> Optional[float]:
        with provider_call("vendor rate lookup"):
            doc = self.col.find_one({"vendor_id": vendor_id, "waste_type": waste_type})
        if not doc or doc.get("price_per_kg") is None:
            return None
        return float(doc["price_per_kg"])

    def upsert(self, vendor_id: str, waste_type: str, price_per_kg: float) -> VendorWasteType:
        with provider_call("vendor waste type upsert"):
            doc = self.col.find_one_and_update(
                {"vendor_id": vendor_id, "waste_type": waste_type},
                {
                    "$set": {"price_per_kg": float(price_per_kg)},
                    "$setOnInsert": {"created_at": _now()},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return VendorWasteType(**to_str_id(doc))

    def remove_except(self, vendor_id: str, keep: Iterable[str]) -> int:
        with provider_call("vendor waste type cleanup"):
            result = self.col.delete_many({"vendor_id": vendor_id, "waste_type": {"$nin": list(keep)}})
        return result.deleted_count


class PickupRequestRepository:
    collection = "pickup_request"

    def __init__(self, database: Database):
        self.database = database
        self.col = database[self.collection]

    def get(self, request_id: str) -> PickupRequest:
        oid = to_object_id(request_id, "Pickup request")
        with provider_call("pickup request lookup"):
            doc = self.col.find_one({"_id": oid})
        if not doc:
            raise NotFound(f"Pickup request '{request_id}' not found")
        return PickupRequest(**to_str_id(doc))

    def create(self, request: PickupRequest) -> PickupRequest:
        with provider_call("pickup request insert"):
            rid = create_document(self.collection, request, database=self.database)
        return self.get(rid)

    def _find(self, filt: Dict[str, Any], sort_field: str = "created_at") -> List[PickupRequest]:
        with provider_call("pickup request query"):
            docs = list(self.col.find(filt).sort(sort_field, DESCENDING))
        return [PickupRequest(**to_str_id(d)) for d in docs]

    def with_status(self, statuses: List[str]) -> List[PickupRequest]:
        return self._find({"status": {"$in": statuses}})

    def for_citizen(self, citizen_id: str, statuses: List[str]) -> List[PickupRequest]:
        return self._find({"citizen_id": citizen_id, "status": {"$in": statuses}})

    def for_vendor(self, vendor_id: str, statuses: List[str], sort_field: str = "created_at") -> List[PickupRequest]:
        return self._find({"assigned_vendor_id": vendor_id, "status": {"$in": statuses}}, sort_field)

    def compare_and_set(self, request_id: str, expected: List[str], changes: Dict[str, Any], unset: Optional[List[str]] = None) -> bool:
        """Apply `changes` only while the stored status is one of `expected`.

        Returns False when another writer moved the request first.
        """
        oid = to_object_id(request_id, "Pickup request")
        update: Dict[str, Any] = {"$set": {**changes, "updated_at": _now()}}
        if unset:
            update["$unset"] = {field: "" for field in unset}
        with provider_call("pickup request update"):
            result = self.col.update_one({"_id": oid, "status": {"$in": expected}}, update)
        return result.matched_count == 1

    def set_photo_url(self, request_id: str, url: str) -> None:
        oid = to_object_id(request_id, "Pickup request")
        with provider_call("photo url update"):
            self.col.update_one({"_id": oid}, {"$set": {"waste_photo_url": url, "updated_at": _now()}})

    def delete(self, request_id: str) -> None:
        oid = to_object_id(request_id, "Pickup request")
        with provider_call("pickup request delete"):
            self.col.delete_one({"_id": oid})

    def count_by(self, field: str) -> Dict[str, int]:
        with provider_call("pickup request aggregate"):
            rows = list(self.col.aggregate([{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]))
        return {str(r["_id"]): r["count"] for r in rows}


class BillRepository:
    collection = "bill"

    def __init__(self, database: Database):
        self.database = database
        self.col = database[self.collection]

    def insert(self, bill: Bill) -> Bill:
        with provider_call("bill insert"):
            bid = create_document(self.collection, bill, database=self.database)
            doc = self.col.find_one({"_id": ObjectId(bid)})
        return Bill(**to_str_id(doc))

    def for_request(self, request_id: str) -> Optional[Bill]:
        with provider_call("bill lookup"):
            doc = self.col.find_one({"request_id": request_id})
        return Bill(**to_str_id(doc)) if doc else None

    def billed_request_ids(self, request_ids: List[str]) -> Set[str]:
        with provider_call("bill lookup"):
            docs = self.col.find({"request_id": {"$in": request_ids}}, {"request_id": 1})
            return {d["request_id"] for d in docs}

    def for_party(self, field: str, profile_id: str) -> List[Bill]:
        with provider_call("bill query"):
            docs = list(self.col.find({field: profile_id}).sort("created_at", DESCENDING))
        return [Bill(**to_str_id(d)) for d in docs]

    def for_citizen(self, citizen_id: str) -> List[Bill]:
        return self.for_party("citizen_id", citizen_id)

    def for_vendor(self, vendor_id: str) -> List[Bill]:
        return self.for_party("vendor_id", vendor_id)

    def totals(self, field: Optional[str] = None, profile_id: Optional[str] = None) -> Dict[str, float]:
        pipeline: List[Dict[str, Any]] = []
        if field:
            pipeline.append({"$match": {field: profile_id}})
        with provider_call("bill aggregate"):
            rows = list(self.col.aggregate(pipeline + [
                {"$group": {
                    "_id": None,
                    "count": {"$sum": 1},
                    "gross_amount": {"$sum": "$gross_amount"},
                    "platform_fee": {"$sum": "$platform_fee"},
                    "net_amount": {"$sum": "$net_amount"},
                }}
            ]))
        if not rows:
            return {"count": 0, "gross_amount": 0.0, "platform_fee": 0.0, "net_amount": 0.0}
        row = rows[0]
        row.pop("_id", None)
        return row


class Repositories:
    def __init__(self, database: Database):
        self.database = database
        self.profiles = ProfileRepository(database)
        self.vendor_rates = VendorWasteTypeRepository(database)
        self.requests = PickupRequestRepository(database)
        self.bills = BillRepository(database)


class UnitOfWork:
    """Groups multi-step writes with compensating actions.

    Register an undo step after each write succeeds. If the block raises,
    the undo steps run newest first and the error propagates.
    """

    def __init__(self, name: str):
        self.name = name
        self._compensations: List[Callable[[], Any]] = []

    def on_rollback(self, action: Callable[[], Any]) -> None:
        self._compensations.append(action)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self._compensations.clear()
            return False
        logger.warning("Rolling back %s after %s", self.name, exc_type.__name__)
        for action in reversed(self._compensations):
            try:
                action()
            except (PyMongoError, PickupError) as e:
                logger.error("Compensation for %s failed: %s", self.name, e)
        self._compensations.clear()
        return False
