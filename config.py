import json
import os
from pathlib import Path

# ------------------ Config ------------------
APP_NAME = os.environ.get("APP_NAME", "HWID License Server")
PORT = int(os.environ.get("PORT", "10000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

STORE_BACKEND = os.environ.get("STORE_BACKEND", "supabase").strip().lower()  # supabase | sqlite
SQLITE_PATH = os.environ.get("SQLITE_PATH", "licenses.db")
SUPABASE_CREDENTIALS_FILE = os.environ.get(
    "SUPABASE_CREDENTIALS_FILE",
    str(Path(__file__).resolve().parent / "supabase_credentials.json"),
)

LICENSE_PRODUCT = os.environ.get("LICENSE_PRODUCT", "HAMSTER")
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY")  # /issue, /suspend, /admin/logs

SELF_URL = os.environ.get("SELF_URL", "").strip()
KEEPALIVE_SECONDS = int(os.environ.get("KEEPALIVE_SECONDS", str(4 * 60)))


def load_supabase_credentials(path: str | None = None) -> tuple[str, str]:
    """
    Returns (url, service_key).

    A credentials file wins over the environment; the file is a JSON object
    with "url" and "service_key".
    """
    path = path or SUPABASE_CREDENTIALS_FILE
    if path and os.path.exists(path):
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh) or {}
        url = (data.get("url") or "").strip()
        key = (data.get("service_key") or "").strip()
    else:
        url = (os.environ.get("SUPABASE_URL") or "").strip()
        key = (os.environ.get("SUPABASE_SERVICE_KEY") or "").strip()

    if not url or not key:
        raise RuntimeError(
            "Missing Supabase credentials: add supabase_credentials.json or set "
            "SUPABASE_URL / SUPABASE_SERVICE_KEY"
        )
    return url, key
