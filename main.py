import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Depends, UploadFile, File, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel

import auth
import database
import lifecycle
from errors import PickupError, ProviderError
from matching import visible_requests
from repositories import Repositories
from schemas import (
    ACTIVE_STATUSES, VENDOR_JOB_STATUSES, Bill, CitizenRequests, CompletePickupIn, Identity,
    PickupRequest, Profile, SchedulePickupIn, Token, VendorRateIn, VendorWasteType,
)
from storage import LocalFileStorage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pickup")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

app = FastAPI(title="Waste Pickup Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PickupError)
async def pickup_error_handler(request: Request, exc: PickupError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


# ------------------ Dependencies ------------------
def get_db():
    if database.db is None:
        raise ProviderError("Database not configured")
    return database.db


def get_repositories(db=Depends(get_db)) -> Repositories:
    return Repositories(db)


def get_storage() -> LocalFileStorage:
    return LocalFileStorage()


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> Identity:
    return auth.get_current_identity(db, token)


def require_role(*roles: str):
    def wrapper(user: Identity = Depends(get_current_user)):
        return auth.require_role(user, *roles)
    return wrapper


class BillOut(BaseModel):
    request: PickupRequest
    bill: Bill


@app.on_event("startup")
async def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    database.ensure_indexes(database.db)
    issued = lifecycle.reconcile_missing_bills(Repositories(database.db))
    if issued:
        logger.warning("Issued %d missing bills on startup", len(issued))


# ------------------ Public & Utility ------------------
@app.get("/")
def read_root():
    return {"message": "Waste Pickup Marketplace Backend Running"}


@app.get("/test")
def test_database():
    if database.db is None:
        return {"backend": "✅ Running", "database": "❌ Not Available"}
    try:
        collections = database.db.list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected",
            "collections": collections[:10]
        }
    except Exception as e:
        return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}


# ------------------ Auth Endpoints (email) ------------------
@app.post("/auth/register", response_model=Token)
def register(
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    role: str = Form(...),
    contact: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    waste_types: List[str] = Form([]),
    repos: Repositories = Depends(get_repositories),
):
    profile = auth.sign_up(repos, name, email, password, role, contact, address, waste_types)
    return {"access_token": auth.token_for(profile), "token_type": "bearer"}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), repos: Repositories = Depends(get_repositories)):
    token = auth.sign_in(repos, form_data.username, form_data.password)
    return {"access_token": token, "token_type": "bearer"}


@app.post("/auth/logout")
def logout(user: Identity = Depends(get_current_user), db=Depends(get_db)):
    auth.sign_out(db, user)
    return {"ok": True}


@app.get("/auth/me", response_model=Profile)
def me(user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return repos.profiles.get(user.id)


# ------------------ Vendor configuration ------------------
@app.get("/vendor/waste-types", response_model=List[VendorWasteType])
def list_waste_types(user: Identity = Depends(require_role("vendor")), repos: Repositories = Depends(get_repositories)):
    return repos.vendor_rates.for_vendor(user.id)


@app.put("/vendor/waste-types", response_model=List[VendorWasteType])
def configure_waste_types(
    rates: List[VendorRateIn],
    replace: bool = False,
    user: Identity = Depends(require_role("vendor")),
    repos: Repositories = Depends(get_repositories),
):
    for rate in rates:
        repos.vendor_rates.upsert(user.id, rate.waste_type, rate.price_per_kg)
    if replace:
        repos.vendor_rates.remove_except(user.id, [r.waste_type for r in rates])
    logger.info("Vendor %s configured %d waste types", user.id, len(rates))
    return repos.vendor_rates.for_vendor(user.id)


# ------------------ Citizen requests ------------------
@app.post("/requests", response_model=PickupRequest)
async def create_request(
    waste_type: Optional[str] = Form(None),
    weight_category: Optional[str] = Form(None),
    approximate_weight: Optional[float] = Form(None),
    citizen_location: Optional[str] = Form(None),
    waste_photo: Optional[UploadFile] = File(None),
    user: Identity = Depends(get_current_user),
    repos: Repositories = Depends(get_repositories),
    storage: LocalFileStorage = Depends(get_storage),
):
    photo = await waste_photo.read() if waste_photo is not None else None
    return lifecycle.submit_request(
        repos, user, waste_type, weight_category,
        approximate_weight=approximate_weight,
        citizen_location=citizen_location,
        photo=photo or None,
        storage=storage,
    )


@app.get("/requests/mine", response_model=CitizenRequests)
def my_requests(user: Identity = Depends(require_role("citizen")), repos: Repositories = Depends(get_repositories)):
    return CitizenRequests(
        active=repos.requests.for_citizen(user.id, ACTIVE_STATUSES),
        history=repos.requests.for_citizen(user.id, lifecycle.TERMINAL_STATUSES),
    )


@app.post("/requests/{request_id}/cancel", response_model=PickupRequest)
def cancel(request_id: str, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return lifecycle.cancel_request(repos, user, request_id)


# ------------------ Vendor jobs ------------------
@app.get("/vendor/requests/available", response_model=List[PickupRequest])
def available_requests(user: Identity = Depends(require_role("vendor")), repos: Repositories = Depends(get_repositories)):
    declared = repos.vendor_rates.declared_types(user.id)
    return visible_requests(declared, repos.requests.with_status(["pending"]))


@app.get("/vendor/jobs", response_model=List[PickupRequest])
def vendor_jobs(user: Identity = Depends(require_role("vendor")), repos: Repositories = Depends(get_repositories)):
    return repos.requests.for_vendor(user.id, VENDOR_JOB_STATUSES)


@app.get("/vendor/history", response_model=List[PickupRequest])
def vendor_history(user: Identity = Depends(require_role("vendor")), repos: Repositories = Depends(get_repositories)):
    return repos.requests.for_vendor(user.id, ["completed"], sort_field="updated_at")


@app.post("/requests/{request_id}/accept", response_model=PickupRequest)
def accept(request_id: str, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return lifecycle.accept_request(repos, user, request_id)


@app.post("/requests/{request_id}/decline", response_model=PickupRequest)
def decline(request_id: str, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return lifecycle.decline_request(repos, user, request_id)


@app.post("/requests/{request_id}/schedule", response_model=PickupRequest)
def schedule(request_id: str, body: SchedulePickupIn, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return lifecycle.schedule_pickup(repos, user, request_id, body.pickup_date, body.pickup_time)


@app.post("/requests/{request_id}/start", response_model=PickupRequest)
def start(request_id: str, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return lifecycle.start_pickup(repos, user, request_id)


@app.post("/requests/{request_id}/complete", response_model=BillOut)
def complete(request_id: str, body: CompletePickupIn, user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    request, bill = lifecycle.complete_pickup(repos, user, request_id, body.actual_weight)
    return BillOut(request=request, bill=bill)


# ------------------ Bills ------------------
@app.get("/bills", response_model=List[Bill])
def list_bills(user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    if user.role == "vendor":
        return repos.bills.for_vendor(user.id)
    return repos.bills.for_citizen(user.id)


# ------------------ Analytics ------------------
@app.get("/analytics/summary")
def analytics_summary(user: Identity = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    by_status = repos.requests.count_by("status")
    party = "vendor_id" if user.role == "vendor" else "citizen_id"
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_waste_type": repos.requests.count_by("waste_type"),
        "bills": repos.bills.totals(party, user.id),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
