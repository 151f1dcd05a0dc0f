from dataclasses import dataclass

from flask import current_app, jsonify, request

from accounts import AccountService
from db import DocumentStore
from devices import DeviceVerifier
from licensing import LicenseEngine

EXTENSION_KEY = "hwid_license"

IDENTITY_FIELDS = ("identity", "username", "email")
LICENSE_KEY_FIELDS = ("license_key", "licenseKey", "key")
DEVICE_FIELDS = ("device_id", "deviceId", "hwid", "fingerprint")


@dataclass
class Services:
    store: DocumentStore
    engine: LicenseEngine
    accounts: AccountService
    devices: DeviceVerifier | None = None


def services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def read_body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def pick_any(d: dict, *keys, default=""):
    """Pick the first non-empty value from d for any of the provided keys."""
    if not isinstance(d, dict):
        return default
    for k in keys:
        v = d.get(k)
        if v is None:
            continue
        # accept primitives only
        if isinstance(v, (str, int, float, bool)):
            if str(v).strip() != "":
                return v
    return default


def pick_str(d: dict, *keys) -> str:
    return str(pick_any(d, *keys, default="")).strip()


def json_error(msg, code=400, reason="missing_fields"):
    return jsonify({"allowed": False, "reason": reason, "message": msg}), code
