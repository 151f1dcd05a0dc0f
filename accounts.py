import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from werkzeug.security import check_password_hash, generate_password_hash

from db import USERS, DocumentStore, StoreError
from licensing import LicenseEngine, LoginResult, Outcome

log = logging.getLogger(__name__)


class PasswordHasher:
    def hash(self, password: str) -> str:
        return generate_password_hash(password)

    def verify(self, password: str, digest: str) -> bool:
        if not digest:
            return False
        return check_password_hash(digest, password)


class AuthReason(str, Enum):
    REGISTERED = "registered"
    LOGGED_IN = "logged_in"
    MISSING_FIELDS = "missing_fields"
    IDENTITY_TAKEN = "identity_taken"
    UNKNOWN_IDENTITY = "unknown_identity"
    DEVICE_MISMATCH = "device_mismatch"
    BAD_PASSWORD = "bad_password"
    LICENSE_REJECTED = "license_rejected"
    STORE_ERROR = "store_error"


AUTH_MESSAGES = {
    AuthReason.REGISTERED: "Account created",
    AuthReason.LOGGED_IN: "Login successful",
    AuthReason.MISSING_FIELDS: "identity, password, license_key and device_id required",
    AuthReason.IDENTITY_TAKEN: "Identity already registered",
    AuthReason.UNKNOWN_IDENTITY: "Invalid credentials",
    AuthReason.DEVICE_MISMATCH: "Device mismatch",
    AuthReason.BAD_PASSWORD: "Invalid credentials",
    AuthReason.LICENSE_REJECTED: "License rejected",
    AuthReason.STORE_ERROR: "Service unavailable, try again later",
}


@dataclass
class AuthResult:
    reason: AuthReason
    license: LoginResult | None = None

    @property
    def allowed(self) -> bool:
        return self.reason in (AuthReason.REGISTERED, AuthReason.LOGGED_IN)

    @property
    def message(self) -> str:
        if self.reason is AuthReason.LICENSE_REJECTED and self.license is not None:
            return self.license.message
        return AUTH_MESSAGES[self.reason]

    def to_dict(self) -> dict:
        out = {"allowed": self.allowed, "reason": self.reason.value, "message": self.message}
        if self.license is not None:
            out["license"] = self.license.to_dict()
        return out


def _license_failure(result: LoginResult) -> AuthResult:
    if result.outcome is Outcome.STORE_ERROR:
        return AuthResult(AuthReason.STORE_ERROR, license=result)
    return AuthResult(AuthReason.LICENSE_REJECTED, license=result)


class AccountService:
    """Identity + password accounts layered over the license engine."""

    def __init__(self, store: DocumentStore, engine: LicenseEngine, hasher: PasswordHasher | None = None):
        self.store = store
        self.engine = engine
        self.hasher = hasher or PasswordHasher()

    def register(self, identity: str, password: str, license_key: str, device_id: str,
                 now: datetime | None = None) -> AuthResult:
        identity = (identity or "").strip().lower()
        license_key = (license_key or "").strip()
        device_id = (device_id or "").strip()
        if not identity or not password or not license_key or not device_id:
            return AuthResult(AuthReason.MISSING_FIELDS)

        now = now or self.engine.clock()

        try:
            if self.store.get(USERS, identity) is not None:
                return AuthResult(AuthReason.IDENTITY_TAKEN)
        except StoreError as e:
            log.error("[REGISTER] user lookup failed identity=%s: %s", identity, e)
            return AuthResult(AuthReason.STORE_ERROR)

        lic = self.engine.evaluate_login(identity, license_key, device_id, now)
        if not lic.allowed:
            return _license_failure(lic)

        user = {
            "identity": identity,
            "password_digest": self.hasher.hash(password),
            "bound_device_id": device_id,
            "license_key": license_key,
            "created_at": now.isoformat(),
        }
        try:
            self.store.upsert(USERS, identity, user)
        except StoreError as e:
            log.error("[REGISTER] user create failed identity=%s: %s", identity, e)
            return AuthResult(AuthReason.STORE_ERROR)

        log.info("[REGISTER] identity=%s key=%s", identity, license_key)
        return AuthResult(AuthReason.REGISTERED, license=lic)

    def login(self, identity: str, password: str, device_id: str,
              now: datetime | None = None) -> AuthResult:
        identity = (identity or "").strip().lower()
        device_id = (device_id or "").strip()
        if not identity or not password or not device_id:
            return AuthResult(AuthReason.MISSING_FIELDS)

        try:
            user = self.store.get(USERS, identity)
        except StoreError as e:
            log.error("[AUTH] user lookup failed identity=%s: %s", identity, e)
            return AuthResult(AuthReason.STORE_ERROR)

        if user is None:
            return AuthResult(AuthReason.UNKNOWN_IDENTITY)
        if user.get("bound_device_id") != device_id:
            log.warning("[AUTH] device mismatch identity=%s device=%s", identity, device_id)
            return AuthResult(AuthReason.DEVICE_MISMATCH)
        if not self.hasher.verify(password, user.get("password_digest") or ""):
            return AuthResult(AuthReason.BAD_PASSWORD)

        license_key = (user.get("license_key") or "").strip()
        if not license_key:
            log.error("[AUTH] user record has no license_key identity=%s", identity)
            return AuthResult(AuthReason.STORE_ERROR)

        # the license may have expired or been suspended since registration
        lic = self.engine.evaluate_login(identity, license_key, device_id, now)
        if not lic.allowed:
            return _license_failure(lic)

        return AuthResult(AuthReason.LOGGED_IN, license=lic)
