import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache

from db import LICENSES, DocumentStore, StoreError

log = logging.getLogger(__name__)

EPOCH = date(1970, 1, 1)
DEFAULT_PRODUCT = "HAMSTER"
# keeps activation + duration well inside date.max for any activation before year 7000
MAX_DURATION_DAYS = 1_000_000

_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


class LicenseInputError(ValueError):
    """A required login field is missing."""


class Outcome(str, Enum):
    BOUND_OK = "bound_ok"
    LOGIN_OK = "login_ok"
    INVALID_KEY = "invalid_key"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    DEVICE_MISMATCH = "device_mismatch"
    IDENTITY_MISMATCH = "identity_mismatch"
    STORE_ERROR = "store_error"


MESSAGES = {
    Outcome.BOUND_OK: "License activated on this device",
    Outcome.LOGIN_OK: "Device authorized",
    Outcome.INVALID_KEY: "Invalid license key",
    Outcome.INACTIVE: "License inactive",
    Outcome.EXPIRED: "License expired",
    Outcome.DEVICE_MISMATCH: "Device mismatch",
    Outcome.IDENTITY_MISMATCH: "Account mismatch",
    Outcome.STORE_ERROR: "License service unavailable, try again later",
}


@dataclass
class LoginResult:
    outcome: Outcome
    expires_at: date | None = None
    duration_days: int | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome in (Outcome.BOUND_OK, Outcome.LOGIN_OK)

    @property
    def message(self) -> str:
        return MESSAGES[self.outcome]

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.outcome.value,
            "message": self.message,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "duration_days": self.duration_days,
        }


# ------------------ Key parsing ------------------

@lru_cache(maxsize=16)
def _key_pattern(product: str):
    return re.compile(rf"{re.escape(product)}-(\d+)D-.+", re.IGNORECASE)


def parse_duration_days(license_key: str, product: str = DEFAULT_PRODUCT) -> int | None:
    """HAMSTER-30D-ABC123 -> 30. None when the key carries no usable duration."""
    m = _key_pattern(product).fullmatch((license_key or "").strip())
    if not m:
        return None
    days = int(m.group(1))
    return days if 0 < days <= MAX_DURATION_DAYS else None


# ------------------ Dates ------------------
# Expiry math runs on epoch days (UTC calendar days since 1970-01-01).
# Datetimes, dates and ISO strings are converted on the way in only.

def epoch_day(value) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return (value.date() - EPOCH).days
    if isinstance(value, date):
        return (value - EPOCH).days
    if isinstance(value, str):
        s = value.strip()
        if len(s) == 10:
            return epoch_day(date.fromisoformat(s))
        # PostgREST trims trailing zeros from fractions; 3.10 only reads 3 or 6 digits
        s = _FRACTION.sub(lambda m: f"{m.group(1)}.{(m.group(2) + '00000')[:6]}", s)
        return epoch_day(datetime.fromisoformat(s.replace("Z", "+00:00")))
    raise TypeError(f"cannot read a date from {type(value).__name__}")


def from_epoch_day(day: int) -> date:
    return EPOCH + timedelta(days=day)


def compute_expiry(activated_at, duration_days: int | None) -> date | None:
    """First calendar day (UTC) on which the license is no longer valid."""
    start = epoch_day(activated_at)
    if not duration_days or start is None:
        return None
    return from_epoch_day(start + duration_days)


def is_expired(expires_at, now) -> bool:
    """True from the expiry day on. No expiry date means no expiry."""
    expires = epoch_day(expires_at)
    return expires is not None and epoch_day(now) >= expires


def _record_expiry(record: dict, duration_days: int | None) -> date | None:
    activated = record.get("activated_at") or record.get("first_activated_at")
    expires = compute_expiry(activated, duration_days)
    if expires is None and record.get("expires_at"):
        expires = from_epoch_day(epoch_day(record["expires_at"]))
    return expires


# ------------------ Binding state machine ------------------

@dataclass
class Decision:
    result: LoginResult
    updates: dict = field(default_factory=dict)
    audit: dict | None = None


def _audit(kind: str, identity: str, device_id: str, now: datetime) -> dict:
    return {
        "type": kind,
        "identity": identity,
        "device_id": device_id,
        "created_at": now.isoformat(),
    }


def decide(record: dict | None, license_key: str, identity: str, device_id: str,
           now: datetime, product: str = DEFAULT_PRODUCT) -> Decision:
    """
    Evaluates one login attempt against a license record.

    Pure: returns the outcome, the fields to merge into the record and the
    audit entry to append. Checks run in a fixed order: missing record,
    inactive flag, expiry, first binding, device, identity.
    """
    if record is None:
        return Decision(LoginResult(Outcome.INVALID_KEY))

    if record.get("active") is False:
        return Decision(LoginResult(Outcome.INACTIVE))

    duration = record.get("duration_days") or parse_duration_days(license_key, product)
    expires = _record_expiry(record, duration)
    now_iso = now.isoformat()

    if is_expired(expires, now):
        return Decision(
            LoginResult(Outcome.EXPIRED, expires_at=expires, duration_days=duration),
            updates={"active": False, "expired_at": now_iso},
        )

    if not record.get("bound_device_id"):
        updates = {
            "bound_device_id": device_id,
            "owner_identity": identity,
            "activated_at": now_iso,
            "last_login_at": now_iso,
        }
        if not record.get("first_activated_at"):
            updates["first_activated_at"] = now_iso
        if duration:
            expires = compute_expiry(now, duration)
            updates["duration_days"] = duration
            updates["expires_at"] = expires.isoformat()
        return Decision(
            LoginResult(Outcome.BOUND_OK, expires_at=expires, duration_days=duration),
            updates=updates,
            audit=_audit("first_activation", identity, device_id, now),
        )

    if record["bound_device_id"] != device_id:
        return Decision(
            LoginResult(Outcome.DEVICE_MISMATCH),
            audit=_audit("hwid_mismatch", identity, device_id, now),
        )

    owner = record.get("owner_identity")
    if owner and owner != identity:
        return Decision(
            LoginResult(Outcome.IDENTITY_MISMATCH),
            audit=_audit("username_mismatch", identity, device_id, now),
        )

    return Decision(
        LoginResult(Outcome.LOGIN_OK, expires_at=expires, duration_days=duration),
        updates={"last_login_at": now_iso},
    )


def _now():
    return datetime.now(timezone.utc)


class LicenseEngine:
    """Runs decide() against the store and persists its effects."""

    def __init__(self, store: DocumentStore, product: str = DEFAULT_PRODUCT, clock=_now):
        self.store = store
        self.product = product
        self.clock = clock

    def evaluate_login(self, identity: str, license_key: str, device_id: str,
                       now: datetime | None = None) -> LoginResult:
        identity = (identity or "").strip().lower()
        license_key = (license_key or "").strip()
        device_id = (device_id or "").strip()
        if not identity or not license_key or not device_id:
            raise LicenseInputError("identity, license_key and device_id required")

        now = now or self.clock()

        try:
            record = self.store.get(LICENSES, license_key)
        except StoreError as e:
            log.error("[LOGIN] license lookup failed key=%s: %s", license_key, e)
            return LoginResult(Outcome.STORE_ERROR)

        try:
            decision = decide(record, license_key, identity, device_id, now, self.product)
        except (TypeError, ValueError, OverflowError) as e:
            log.error("[LOGIN] unreadable license record key=%s: %s", license_key, e)
            return LoginResult(Outcome.STORE_ERROR)

        if decision.updates:
            try:
                self.store.upsert(LICENSES, license_key, decision.updates)
            except StoreError as e:
                log.error("[LOGIN] license update failed key=%s outcome=%s: %s",
                          license_key, decision.result.outcome.value, e)
                return LoginResult(Outcome.STORE_ERROR)

        if decision.audit:
            self._append_audit(license_key, decision.audit)

        result = decision.result
        if result.allowed:
            log.info("[LOGIN] %s key=%s identity=%s", result.outcome.value, license_key, identity)
        else:
            log.warning("[LOGIN] denied %s key=%s identity=%s device=%s",
                        result.outcome.value, license_key, identity, device_id)
        return result

    def _append_audit(self, license_key: str, entry: dict):
        try:
            self.store.append_log(LICENSES, license_key, entry)
        except StoreError as e:
            log.error("[AUDIT] could not append %s for key=%s: %s", entry["type"], license_key, e)
