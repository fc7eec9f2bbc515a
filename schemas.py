"""
Database Schemas for the Waste Pickup Marketplace

Each Pydantic model corresponds to a MongoDB collection (snake case of the
class name): Profile -> "profile", PickupRequest -> "pickup_request", ...
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime, date, time

Role = Literal["citizen", "vendor"]
WasteType = Literal["plastic", "paper", "organic", "glass", "metal"]
WeightCategory = Literal["small", "medium", "large"]
RequestStatus = Literal["pending", "accepted", "assigned", "in_progress", "completed", "cancelled", "declined"]

WASTE_TYPES: List[str] = ["plastic", "paper", "organic", "glass", "metal"]
WEIGHT_CATEGORIES = {
    "small": "0-5 kg",
    "medium": "5-15 kg",
    "large": "15+ kg",
}
REQUEST_STATUSES: List[str] = ["pending", "accepted", "assigned", "in_progress", "completed", "cancelled", "declined"]
ACTIVE_STATUSES: List[str] = ["pending", "accepted", "assigned", "in_progress"]
VENDOR_JOB_STATUSES: List[str] = ["accepted", "assigned", "in_progress"]


class Profile(BaseModel):
    id: Optional[str] = None
    role: Role = Field(..., description="citizen or vendor, fixed at sign-up")
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    contact: Optional[str] = Field(None, description="Phone number")
    address: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VendorWasteType(BaseModel):
    id: Optional[str] = None
    vendor_id: str
    waste_type: WasteType
    price_per_kg: float = Field(5.0, ge=0, allow_inf_nan=False, description="Rate paid per kg")
    created_at: Optional[datetime] = None


class PickupRequest(BaseModel):
    id: Optional[str] = None
    citizen_id: str = Field(..., description="Owning citizen profile id")
    waste_type: WasteType
    weight_category: WeightCategory
    approximate_weight: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Citizen estimate, advisory only")
    actual_weight: Optional[float] = Field(None, gt=0, allow_inf_nan=False, description="Measured by the vendor at completion")
    waste_photo_url: Optional[str] = None
    status: RequestStatus = "pending"
    assigned_vendor_id: Optional[str] = None
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    citizen_location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Bill(BaseModel):
    id: Optional[str] = None
    request_id: str
    citizen_id: str
    vendor_id: str
    waste_type: WasteType
    actual_weight: float
    rate_per_kg: float
    gross_amount: float
    platform_fee: float
    net_amount: float
    created_at: Optional[datetime] = None


# ------------------ API payloads ------------------
class Identity(BaseModel):
    id: str
    role: Role
    email: Optional[str] = None
    jti: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str


class VendorRateIn(BaseModel):
    waste_type: WasteType
    price_per_kg: float = Field(5.0, ge=0, allow_inf_nan=False)


class SchedulePickupIn(BaseModel):
    pickup_date: Optional[date] = None
    pickup_time: Optional[time] = None


class CompletePickupIn(BaseModel):
    actual_weight: Optional[float] = None


class CitizenRequests(BaseModel):
    active: List[PickupRequest]
    history: List[PickupRequest]
