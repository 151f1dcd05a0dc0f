import atexit
import hmac
import logging
from datetime import datetime, timezone

from flask import Flask, current_app, jsonify, request

import config
from accounts import AccountService, PasswordHasher
from auth_blueprint import auth_bp
from db import LICENSES, DocumentStore, StoreError, SupabaseStore, create_store
from devices import DeviceStatus, DeviceVerifier
from helpers import (
    DEVICE_FIELDS,
    EXTENSION_KEY,
    IDENTITY_FIELDS,
    LICENSE_KEY_FIELDS,
    Services,
    json_error,
    pick_any,
    pick_str,
    read_body,
    services,
)
from identity import IdentityProvider, SupabaseIdentityProvider
from keepalive import KeepAlive
from licensing import (
    LicenseEngine,
    MAX_DURATION_DAYS,
    LicenseInputError,
    Outcome,
    epoch_day,
    from_epoch_day,
    parse_duration_days,
)

log = logging.getLogger(__name__)

LOGIN_STATUS = {
    Outcome.BOUND_OK: 200,
    Outcome.LOGIN_OK: 200,
    Outcome.INVALID_KEY: 404,
    Outcome.INACTIVE: 403,
    Outcome.EXPIRED: 403,
    Outcome.DEVICE_MISMATCH: 403,
    Outcome.IDENTITY_MISMATCH: 403,
    Outcome.STORE_ERROR: 503,
}

DEVICE_STATUS = {
    DeviceStatus.REGISTERED: 200,
    DeviceStatus.AUTHORIZED: 200,
    DeviceStatus.USER_NOT_FOUND: 400,
    DeviceStatus.DEVICE_MISMATCH: 403,
    DeviceStatus.STORE_ERROR: 500,
}


def _now():
    return datetime.now(timezone.utc)


def _require_admin_api(req):
    key = req.headers.get("X-Admin-Key") or ""
    expected = current_app.config.get("ADMIN_API_KEY") or ""
    return bool(key) and bool(expected) and hmac.compare_digest(key, expected)


def _read_duration(raw) -> int:
    # whole days only: a JSON int or a string of digits, never a bool or float
    if isinstance(raw, bool):
        raise TypeError("duration_days must be an integer")
    if isinstance(raw, str) and raw.strip().isdigit():
        raw = int(raw.strip())
    if not isinstance(raw, int):
        raise TypeError("duration_days must be an integer")
    if not 0 < raw <= MAX_DURATION_DAYS:
        raise ValueError(f"duration_days out of range: {raw}")
    return raw


def create_app(
    store: DocumentStore | None = None,
    identity_provider: IdentityProvider | None = None,
    clock=None,
    product: str | None = None,
    admin_api_key: str | None = None,
) -> Flask:
    """
    Builds the Flask app around an injected store.

    Without a store the one named by STORE_BACKEND is opened here and closed
    at process exit.
    """
    app = Flask(__name__)
    app.config["APP_NAME"] = config.APP_NAME
    app.config["ADMIN_API_KEY"] = admin_api_key if admin_api_key is not None else config.ADMIN_API_KEY

    if store is None:
        store = create_store(config.STORE_BACKEND, config.SQLITE_PATH)
        store.open()
        atexit.register(store.close)
        if identity_provider is None and isinstance(store, SupabaseStore):
            identity_provider = SupabaseIdentityProvider(store.client)

    clock = clock or _now
    engine = LicenseEngine(store, product=product or config.LICENSE_PRODUCT, clock=clock)
    app.extensions[EXTENSION_KEY] = Services(
        store=store,
        engine=engine,
        accounts=AccountService(store, engine, PasswordHasher()),
        devices=DeviceVerifier(store, identity_provider, clock=clock) if identity_provider else None,
    )

    app.register_blueprint(auth_bp)

    # ------------------ Public/health ------------------
    @app.get("/")
    def home():
        return f"{app.config['APP_NAME']} OK", 200

    # ------------------ Client API ------------------
    @app.post("/login")
    def login():
        """
        License gate for the client app.
        Body: identity (username or email), license_key, device_id.
        """
        data = read_body()
        try:
            result = services().engine.evaluate_login(
                identity=pick_str(data, *IDENTITY_FIELDS),
                license_key=pick_str(data, *LICENSE_KEY_FIELDS),
                device_id=pick_str(data, *DEVICE_FIELDS),
            )
        except LicenseInputError:
            return json_error("identity, license_key and device_id required")
        return jsonify(result.to_dict()), LOGIN_STATUS[result.outcome]

    @app.post("/verifyDevice")
    def verify_device():
        """Pins a provider account (uid) to its first device."""
        verifier = services().devices
        if verifier is None:
            return json_error("identity provider not configured", 501, reason="not_configured")

        data = read_body()
        try:
            check = verifier.verify(
                uid=pick_str(data, "uid"),
                device_id=pick_str(data, *DEVICE_FIELDS),
                email=pick_str(data, "email"),
            )
        except ValueError:
            return json_error("Missing uid, deviceId or email")

        return jsonify(check.to_dict()), DEVICE_STATUS[check.status]

    # ------------------ Admin API (provision / suspend / logs) ------------------
    @app.post("/issue")
    def issue_license():
        """
        Provisions an unbound, active license record for an existing key.
        Body: license_key, duration_days(optional), expires_at(optional, YYYY-MM-DD)
        """
        if not _require_admin_api(request):
            return json_error("Unauthorized", 401, reason="unauthorized")

        data = read_body()
        license_key = pick_str(data, *LICENSE_KEY_FIELDS)
        if not license_key:
            return json_error("license_key required")

        record = {"active": True}
        try:
            raw_days = pick_any(data, "duration_days", default=None)
            if raw_days is None:
                duration = parse_duration_days(license_key, services().engine.product)
            else:
                duration = _read_duration(raw_days)
            expires_raw = pick_str(data, "expires_at")
            expires_at = from_epoch_day(epoch_day(expires_raw)) if expires_raw else None
        except (TypeError, ValueError, OverflowError):
            return json_error("duration_days / expires_at invalid", reason="invalid_field")

        if duration:
            record["duration_days"] = duration
        if expires_at:
            record["expires_at"] = expires_at.isoformat()

        store = services().store
        try:
            if store.get(LICENSES, license_key) is not None:
                return json_error("license already exists", 409, reason="license_exists")
            store.upsert(LICENSES, license_key, record)
        except StoreError as e:
            log.error("[ISSUE] key=%s: %s", license_key, e)
            return json_error("Server error", 503, reason="store_error")

        log.info("[ISSUE] provisioned key=%s", license_key)
        return jsonify({"status": "ok", "license_key": license_key, **record}), 201

    @app.post("/suspend")
    def suspend():
        if not _require_admin_api(request):
            return json_error("Unauthorized", 401, reason="unauthorized")

        license_key = pick_str(read_body(), *LICENSE_KEY_FIELDS)
        if not license_key:
            return json_error("license_key required")

        store = services().store
        try:
            if store.get(LICENSES, license_key) is None:
                return json_error("license not found", 404, reason="invalid_key")
            store.upsert(LICENSES, license_key, {"active": False})
        except StoreError as e:
            log.error("[SUSPEND] key=%s: %s", license_key, e)
            return json_error("Server error", 503, reason="store_error")

        log.info("[SUSPEND] key=%s", license_key)
        return jsonify({"status": "ok"}), 200

    @app.get("/admin/logs")
    def admin_logs():
        """Audit trail of one license, oldest first."""
        if not _require_admin_api(request):
            return json_error("Unauthorized", 401, reason="unauthorized")

        license_key = (request.args.get("license_key") or "").strip()
        if not license_key:
            return json_error("license_key required")

        try:
            rows = services().store.list_logs(LICENSES, license_key)
        except StoreError as e:
            log.error("[LOGS] key=%s: %s", license_key, e)
            return json_error("Server error", 503, reason="store_error")
        return jsonify({"license_key": license_key, "logs": rows}), 200

    return app


# --------

if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.SELF_URL:
        KeepAlive(config.SELF_URL, config.KEEPALIVE_SECONDS).start()
    log.info("%s listening on %s", config.APP_NAME, config.PORT)
    create_app().run(host="0.0.0.0", port=config.PORT)
