"""
Identity provider: email/password accounts, JWT bearer tokens, profiles.
"""
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from billing import DEFAULT_RATE_PER_KG
from errors import AuthenticationRequired, AuthorizationDenied, ValidationError
from repositories import Repositories, provider_call
from schemas import WASTE_TYPES, Identity, Profile

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "jti": uuid.uuid4().hex})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for(profile: Profile) -> str:
    return create_access_token({"sub": profile.id, "role": profile.role, "email": profile.email})


def sign_up(repos: Repositories, name: str, email: str, password: str, role: str,
            contact: Optional[str] = None, address: Optional[str] = None,
            waste_types: Optional[List[str]] = None) -> Profile:
    if role not in ("citizen", "vendor"):
        raise ValidationError("role must be 'citizen' or 'vendor'")
    if not password:
        raise ValidationError("password is required")
    waste_types = [w for w in (waste_types or []) if w]
    unknown = [w for w in waste_types if w not in WASTE_TYPES]
    if unknown:
        raise ValidationError(f"Unknown waste types: {', '.join(unknown)}")
    if waste_types and role != "vendor":
        raise ValidationError("Only vendors declare waste types")

    if repos.profiles.email_taken(email):
        raise ValidationError("Email already registered")

    try:
        profile = Profile(role=role, name=name, email=email, contact=contact, address=address)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    profile = repos.profiles.create(profile, get_password_hash(password))

    for waste_type in dict.fromkeys(waste_types):
        repos.vendor_rates.upsert(profile.id, waste_type, DEFAULT_RATE_PER_KG)

    logger.info("Registered %s %s", role, profile.id)
    return profile


def sign_in(repos: Repositories, email: str, password: str) -> str:
    user = repos.profiles.find_credentials(email)
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthenticationRequired("Incorrect email or password")
    return token_for(Profile(**{k: v for k, v in user.items() if k != "password_hash"}))


def sign_out(database: Database, identity: Identity) -> None:
    if not identity.jti:
        return
    with provider_call("sign out"):
        database["revoked_token"].update_one(
            {"jti": identity.jti},
            {"$setOnInsert": {"jti": identity.jti, "revoked_at": datetime.now(timezone.utc)}},
            upsert=True,
        )
    logger.info("Signed out %s", identity.id)


def get_current_identity(database: Database, token: Optional[str]) -> Identity:
    if not token:
        raise AuthenticationRequired("Not authenticated")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthenticationRequired("Could not validate credentials")

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in ("citizen", "vendor"):
        raise AuthenticationRequired("Could not validate credentials")

    jti = payload.get("jti")
    with provider_call("token check"):
        revoked = jti is not None and database["revoked_token"].count_documents({"jti": jti}, limit=1) > 0
    if revoked:
        raise AuthenticationRequired("Session has been signed out")
    return Identity(id=user_id, role=role, email=payload.get("email"), jti=jti)


def require_role(identity: Identity, *roles: str) -> Identity:
    if identity.role not in roles:
        raise AuthorizationDenied("Insufficient permissions")
    return identity
