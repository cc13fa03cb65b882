"""Key/value cache backends.

Every backend honours the same small contract: `get`, `set` (optional TTL in
seconds), `add` (set only if absent or expired, used for leases) and
`delete`. Values are JSON-compatible documents.
"""

import json
import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone

from postgrest.exceptions import APIError
from supabase import create_client

logger = logging.getLogger(__name__)


def cache_key(collection, artifact, *parts):
    key = f"{collection.lower()}_{artifact}"
    if parts:
        key += "_" + "_".join(str(p) for p in parts)
    return key


class CacheStore:
    def get(self, key):
        raise NotImplementedError

    def set(self, key, value, ttl=None):
        raise NotImplementedError

    def add(self, key, value, ttl=None):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def delete_owned(self, key, owner):
        """Delete `key` only while its value's "owner" is `owner`. Returns whether it did."""
        raise NotImplementedError

    def touch_owned(self, key, owner, ttl):
        """Push the expiry of `key` to `ttl` seconds from now if `owner` still holds it."""
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    def __init__(self, clock=time.time):
        self._data = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key):
        with self._lock:
            entry = self._live(key)
        # hand out copies so callers never mutate the stored document
        return json.loads(json.dumps(entry[0])) if entry else None

    def set(self, key, value, ttl=None):
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (json.loads(json.dumps(value)), expires_at)

    def add(self, key, value, ttl=None):
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (json.loads(json.dumps(value)), expires_at)
            return True

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def delete_owned(self, key, owner):
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0].get("owner") != owner:
                return False
            del self._data[key]
            return True

    def touch_owned(self, key, owner, ttl):
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0].get("owner") != owner:
                return False
            self._data[key] = (entry[0], self._clock() + ttl)
            return True


class FileCacheStore(CacheStore):
    """One JSON file per key under `directory`, with the expiry stored alongside the value."""

    def __init__(self, directory="cache", clock=time.time):
        self.directory = directory
        self._clock = clock
        self._lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

    def _path(self, key):
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return os.path.join(self.directory, f"{safe}.json")

    def _read(self, path):
        try:
            with open(path) as f:
                envelope = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read cache file {path}: {e}")
            return None
        expires_at = envelope.get("expiresAt")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return envelope

    def _write(self, path, value, ttl):
        envelope = {"value": value, "expiresAt": self._clock() + ttl if ttl else None}
        tmp = f"{path}.{threading.get_ident()}.tmp"
        with open(tmp, "w") as f:
            json.dump(envelope, f)
        # readers see the old or the new file, never a partial one
        os.replace(tmp, path)

    def get(self, key):
        envelope = self._read(self._path(key))
        return envelope["value"] if envelope else None

    def set(self, key, value, ttl=None):
        self._write(self._path(key), value, ttl)

    def add(self, key, value, ttl=None):
        path = self._path(key)
        with self._lock:
            if self._read(path) is not None:
                return False
            self._write(path, value, ttl)
            return True

    def delete(self, key):
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass

    def delete_owned(self, key, owner):
        path = self._path(key)
        with self._lock:
            envelope = self._read(path)
            if envelope is None or envelope["value"].get("owner") != owner:
                return False
            os.remove(path)
            return True

    def touch_owned(self, key, owner, ttl):
        path = self._path(key)
        with self._lock:
            envelope = self._read(path)
            if envelope is None or envelope["value"].get("owner") != owner:
                return False
            self._write(path, envelope["value"], ttl)
            return True


class SupabaseCacheStore(CacheStore):
    """Cache rows in a Supabase table: key (primary key), value (jsonb), expires_at (timestamptz)."""

    def __init__(self, client, table="holder_cache"):
        self.client = client
        self.table = table

    @classmethod
    def from_settings(cls, settings):
        return cls(create_client(settings.supabase_url, settings.supabase_key), settings.supabase_cache_table)

    @staticmethod
    def _expiry(ttl):
        if not ttl:
            return None
        return (datetime.now(timezone.utc) + timedelta(seconds=ttl)).isoformat()

    @staticmethod
    def _expired(row):
        expires_at = row.get("expires_at")
        if not expires_at:
            return False
        return datetime.fromisoformat(expires_at.replace("Z", "+00:00")) <= datetime.now(timezone.utc)

    def get(self, key):
        rows = self.client.table(self.table).select("value,expires_at").eq("key", key).execute().data
        if not rows or self._expired(rows[0]):
            return None
        return rows[0]["value"]

    def set(self, key, value, ttl=None):
        self.client.table(self.table).upsert({"key": key, "value": value, "expires_at": self._expiry(ttl)}).execute()

    def add(self, key, value, ttl=None):
        now = datetime.now(timezone.utc).isoformat()
        self.client.table(self.table).delete().eq("key", key).lt("expires_at", now).execute()
        try:
            self.client.table(self.table).insert({"key": key, "value": value, "expires_at": self._expiry(ttl)}).execute()
        except APIError as e:
            # primary key conflict: somebody else holds the key
            logger.debug(f"add({key}) rejected: {e}")
            return False
        return True

    def delete(self, key):
        self.client.table(self.table).delete().eq("key", key).execute()

    def delete_owned(self, key, owner):
        rows = self.client.table(self.table).delete().eq("key", key).eq("value->>owner", owner).execute().data
        return bool(rows)

    def touch_owned(self, key, owner, ttl):
        now = datetime.now(timezone.utc).isoformat()
        rows = (
            self.client.table(self.table)
            .update({"expires_at": self._expiry(ttl)})
            .eq("key", key)
            .eq("value->>owner", owner)
            .gt("expires_at", now)
            .execute()
            .data
        )
        return bool(rows)


def make_cache_store(settings):
    backend = settings.cache_backend
    if backend == "memory":
        return MemoryCacheStore()
    if backend == "file":
        return FileCacheStore(settings.cache_dir)
    if backend == "supabase":
        return SupabaseCacheStore.from_settings(settings)
    raise ValueError(f"Unknown CACHE_BACKEND {backend!r}")
