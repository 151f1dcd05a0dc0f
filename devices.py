import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from db import ACCOUNTS, DocumentStore, StoreError
from identity import IdentityProvider, IdentityProviderError

log = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    REGISTERED = "registered"
    AUTHORIZED = "authorized"
    USER_NOT_FOUND = "user_not_found"
    DEVICE_MISMATCH = "device_mismatch"
    STORE_ERROR = "store_error"


DEVICE_MESSAGES = {
    DeviceStatus.REGISTERED: "Device registered",
    DeviceStatus.AUTHORIZED: "Device authorized",
    DeviceStatus.USER_NOT_FOUND: "User not found",
    DeviceStatus.DEVICE_MISMATCH: "Device mismatch",
    DeviceStatus.STORE_ERROR: "Server error",
}


@dataclass
class DeviceCheck:
    status: DeviceStatus

    @property
    def allowed(self) -> bool:
        return self.status in (DeviceStatus.REGISTERED, DeviceStatus.AUTHORIZED)

    @property
    def message(self) -> str:
        return DEVICE_MESSAGES[self.status]

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.status.value, "message": self.message}


class DeviceVerifier:
    """
    Pins each provider account to the first device it signs in from.

    A second device gets the account's sessions revoked and the attempt
    written to the account's access log.
    """

    def __init__(self, store: DocumentStore, provider: IdentityProvider, clock=None):
        self.store = store
        self.provider = provider
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, uid: str, device_id: str, email: str, now: datetime | None = None) -> DeviceCheck:
        uid = (uid or "").strip()
        device_id = (device_id or "").strip()
        email = (email or "").strip().lower()
        if not uid or not device_id or not email:
            raise ValueError("uid, device_id and email required")

        now = now or self.clock()
        now_iso = now.isoformat()

        try:
            if not self.provider.user_exists(uid):
                return DeviceCheck(DeviceStatus.USER_NOT_FOUND)

            account = self.store.get(ACCOUNTS, uid)
            if account is None:
                self.store.upsert(ACCOUNTS, uid, {
                    "device_id": device_id,
                    "email": email,
                    "created_at": now_iso,
                })
                log.info("[DEVICE] first login uid=%s", uid)
                return DeviceCheck(DeviceStatus.REGISTERED)

            if account.get("email") != email:
                self.store.upsert(ACCOUNTS, uid, {"email": email, "last_email_updated_at": now_iso})

            if not account.get("device_id"):
                self.store.upsert(ACCOUNTS, uid, {"device_id": device_id, "last_registered_at": now_iso})
                return DeviceCheck(DeviceStatus.REGISTERED)

            if account["device_id"] == device_id:
                return DeviceCheck(DeviceStatus.AUTHORIZED)
        except (StoreError, IdentityProviderError) as e:
            log.error("[DEVICE] verify failed uid=%s: %s", uid, e)
            return DeviceCheck(DeviceStatus.STORE_ERROR)

        log.warning("[DEVICE] mismatch uid=%s device=%s", uid, device_id)
        try:
            self.provider.revoke_sessions(uid)
        except IdentityProviderError as e:
            log.error("[DEVICE] could not revoke sessions uid=%s: %s", uid, e)
        try:
            self.store.append_log(ACCOUNTS, uid, {
                "type": "unauthorized_device_attempt",
                "device_id": device_id,
                "email": email,
                "created_at": now_iso,
            })
        except StoreError as e:
            log.error("[AUDIT] could not log device attempt uid=%s: %s", uid, e)
        return DeviceCheck(DeviceStatus.DEVICE_MISMATCH)
