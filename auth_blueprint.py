# auth_blueprint.py
from flask import Blueprint, jsonify

from accounts import AuthReason
from helpers import DEVICE_FIELDS, IDENTITY_FIELDS, LICENSE_KEY_FIELDS, pick_any, pick_str, read_body, services
from licensing import Outcome

auth_bp = Blueprint("auth", __name__)

AUTH_STATUS = {
    AuthReason.REGISTERED: 201,
    AuthReason.LOGGED_IN: 200,
    AuthReason.MISSING_FIELDS: 400,
    AuthReason.IDENTITY_TAKEN: 409,
    AuthReason.UNKNOWN_IDENTITY: 401,
    AuthReason.BAD_PASSWORD: 401,
    AuthReason.DEVICE_MISMATCH: 403,
    AuthReason.LICENSE_REJECTED: 403,
    AuthReason.STORE_ERROR: 503,
}


def _respond(result):
    code = AUTH_STATUS[result.reason]
    if result.license is not None and result.license.outcome is Outcome.INVALID_KEY:
        code = 404
    return jsonify(result.to_dict()), code


@auth_bp.post("/register")
def register():
    """Creates a password account pinned to the device that activates the license."""
    data = read_body()
    result = services().accounts.register(
        identity=pick_str(data, *IDENTITY_FIELDS),
        password=str(pick_any(data, "password")),
        license_key=pick_str(data, *LICENSE_KEY_FIELDS),
        device_id=pick_str(data, *DEVICE_FIELDS),
    )
    return _respond(result)


@auth_bp.post("/auth/login")
def login():
    data = read_body()
    result = services().accounts.login(
        identity=pick_str(data, *IDENTITY_FIELDS),
        password=str(pick_any(data, "password")),
        device_id=pick_str(data, *DEVICE_FIELDS),
    )
    return _respond(result)
