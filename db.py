import json
import sqlite3
import threading

from supabase import Client, create_client

from config import load_supabase_credentials

LICENSES = "licenses"
USERS = "users"
ACCOUNTS = "accounts"

# collection -> (key column, log table)
COLLECTIONS = {
    LICENSES: ("license_key", "license_logs"),
    USERS: ("identity", None),
    ACCOUNTS: ("uid", "access_logs"),
}


class StoreError(Exception):
    """The backing store could not serve a request."""


def _key_column(collection: str) -> str:
    try:
        return COLLECTIONS[collection][0]
    except KeyError:
        raise ValueError(f"unknown collection: {collection}") from None


def _log_table(collection: str) -> str:
    table = COLLECTIONS.get(collection, (None, None))[1]
    if not table:
        raise ValueError(f"collection has no log: {collection}")
    return table


class DocumentStore:
    """
    Keyed documents plus an append-only log per document.

    upsert() merges: fields that are not passed keep their stored value.
    """

    def open(self):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def get(self, collection: str, key: str) -> dict | None:
        raise NotImplementedError

    def upsert(self, collection: str, key: str, fields: dict) -> None:
        raise NotImplementedError

    def append_log(self, collection: str, key: str, entry: dict) -> None:
        raise NotImplementedError

    def list_logs(self, collection: str, key: str) -> list[dict]:
        raise NotImplementedError

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()


class SupabaseStore(DocumentStore):
    """Tables are described in schema.sql."""

    def __init__(self, url: str, service_key: str, client: Client | None = None):
        self.url = url
        self.service_key = service_key
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            raise StoreError("store is not open")
        return self._client

    def open(self):
        if self._client is None:
            try:
                self._client = create_client(self.url, self.service_key)
            except Exception as e:
                raise StoreError(f"cannot connect to Supabase: {e}") from e
        return self

    def close(self):
        self._client = None

    def get(self, collection, key):
        col = _key_column(collection)
        try:
            res = self.client.table(collection).select("*").eq(col, key).limit(1).execute()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"get {collection}/{key} failed: {e}") from e
        rows = getattr(res, "data", None) or []
        return dict(rows[0]) if rows else None

    def upsert(self, collection, key, fields):
        col = _key_column(collection)
        payload = dict(fields)
        payload[col] = key
        try:
            self.client.table(collection).upsert(payload, on_conflict=col).execute()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"upsert {collection}/{key} failed: {e}") from e

    def append_log(self, collection, key, entry):
        col = _key_column(collection)
        table = _log_table(collection)
        payload = dict(entry)
        payload[col] = key
        try:
            self.client.table(table).insert(payload).execute()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"append to {table} for {key} failed: {e}") from e

    def list_logs(self, collection, key):
        col = _key_column(collection)
        table = _log_table(collection)
        try:
            res = self.client.table(table).select("*").eq(col, key).order("id").execute()
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"list {table} for {key} failed: {e}") from e
        rows = getattr(res, "data", None) or []
        return [{k: v for k, v in r.items() if k not in ("id", col)} for r in rows]


class SqliteStore(DocumentStore):
    """JSON documents in a local SQLite file. Used for local runs and tests."""

    def __init__(self, path: str):
        self.path = path
        self._con = None
        self._lock = threading.Lock()

    def open(self):
        if self._con is not None:
            return self
        try:
            con = sqlite3.connect(self.path, check_same_thread=False)
            con.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
              collection TEXT NOT NULL,
              key TEXT NOT NULL,
              data TEXT NOT NULL DEFAULT '{}',
              PRIMARY KEY (collection, key)
            );
            CREATE TABLE IF NOT EXISTS logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              collection TEXT NOT NULL,
              key TEXT NOT NULL,
              data TEXT NOT NULL
            );
            """)
            con.commit()
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {self.path}: {e}") from e
        self._con = con
        return self

    def close(self):
        with self._lock:
            if self._con is not None:
                self._con.close()
                self._con = None

    def _run(self, fn):
        with self._lock:
            if self._con is None:
                raise StoreError("store is not open")
            try:
                out = fn(self._con.cursor())
                self._con.commit()
                return out
            except sqlite3.Error as e:
                self._con.rollback()
                raise StoreError(str(e)) from e

    def get(self, collection, key):
        _key_column(collection)

        def q(cur):
            cur.execute("SELECT data FROM documents WHERE collection=? AND key=?", (collection, key))
            row = cur.fetchone()
            return json.loads(row[0]) if row else None

        return self._run(q)

    def upsert(self, collection, key, fields):
        _key_column(collection)

        def q(cur):
            cur.execute("SELECT data FROM documents WHERE collection=? AND key=?", (collection, key))
            row = cur.fetchone()
            doc = json.loads(row[0]) if row else {}
            doc.update(fields)
            cur.execute(
                """INSERT INTO documents (collection, key, data) VALUES (?, ?, ?)
                   ON CONFLICT(collection, key) DO UPDATE SET data=excluded.data""",
                (collection, key, json.dumps(doc)),
            )

        self._run(q)

    def append_log(self, collection, key, entry):
        _log_table(collection)
        self._run(lambda cur: cur.execute(
            "INSERT INTO logs (collection, key, data) VALUES (?, ?, ?)",
            (collection, key, json.dumps(entry)),
        ))

    def list_logs(self, collection, key):
        _log_table(collection)

        def q(cur):
            cur.execute(
                "SELECT data FROM logs WHERE collection=? AND key=? ORDER BY id",
                (collection, key),
            )
            return [json.loads(r[0]) for r in cur.fetchall()]

        return self._run(q)


def create_store(backend: str, sqlite_path: str = "licenses.db") -> DocumentStore:
    backend = (backend or "").strip().lower()
    if backend == "sqlite":
        return SqliteStore(sqlite_path)
    if backend == "supabase":
        url, key = load_supabase_credentials()
        return SupabaseStore(url, key)
    raise ValueError(f"unknown STORE_BACKEND: {backend}")
