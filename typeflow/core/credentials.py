"""Credential provider boundary and scope-owned handle cache.

The provider is an external collaborator: given an organization it returns
credential handles keyed by credential type name. The engine never keeps
process-wide handle caches; each session or run owns a CredentialScope that
fetches handles lazily and disconnects each one exactly once on release.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from typeflow.core.errors import CredentialError

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialHandle(Protocol):
    """Decrypted credential with a connect/query/disconnect lifecycle."""

    type_name: str
    data: dict[str, Any]

    def connect(self) -> None: ...

    def query(self, sql: str, params: list[Any] | None = None) -> Any: ...

    def disconnect(self) -> None: ...


class CredentialProvider(Protocol):
    """Source of credential handles for one organization."""

    def get_credentials(self, organization_id: str) -> dict[str, CredentialHandle]: ...


class GenericCredentialHandle:
    """Configuration-only credential (API keys, tokens, basic auth)."""

    def __init__(self, type_name: str, data: dict[str, Any]):
        self.type_name = type_name
        self.data = data

    def connect(self) -> None:
        pass

    def query(self, sql: str, params: list[Any] | None = None) -> Any:
        raise CredentialError(f"Credential '{self.type_name}' does not support queries")

    def disconnect(self) -> None:
        pass


class SqliteCredentialHandle:
    """Database client handle backed by sqlite3.

    data["database"] is the database path (":memory:" allowed).
    """

    def __init__(self, type_name: str, data: dict[str, Any]):
        self.type_name = type_name
        self.data = data
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            database = self.data.get("database")
            if not database:
                raise CredentialError(f"Credential '{self.type_name}' is missing 'database'")
            self._conn = sqlite3.connect(
                database, timeout=float(self.data.get("timeout", 30.0)), check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row

    def query(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]] | dict[str, Any]:
        """Run one statement. SELECT-like statements return rows, others the row count."""
        self.connect()
        with self._lock:
            assert self._conn is not None
            try:
                cursor = self._conn.execute(sql, params or [])
                if cursor.description is not None:
                    return [dict(row) for row in cursor.fetchall()]
                self._conn.commit()
                return {"row_count": cursor.rowcount}
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def disconnect(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


HANDLE_FACTORIES: dict[str, type] = {
    "sqlite": SqliteCredentialHandle,
}


class StaticCredentialProvider:
    """Provider backed by a static mapping organization -> type -> data.

    A credential's "kind" key selects the handle class ("sqlite" or
    "generic"); it defaults to the credential type name, falling back to
    a configuration-only handle.
    """

    def __init__(self, credentials: dict[str, dict[str, dict[str, Any]]] | None = None):
        self._credentials = credentials or {}

    @classmethod
    def from_file(cls, path: str | Path) -> StaticCredentialProvider:
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise CredentialError(f"Invalid YAML in {path}: {e}")
        if not isinstance(data, dict):
            raise CredentialError(f"Credentials file must be a mapping: {path}")
        return cls(data.get("organizations", data))

    def get_credentials(self, organization_id: str) -> dict[str, CredentialHandle]:
        handles: dict[str, CredentialHandle] = {}
        for type_name, data in self._credentials.get(organization_id, {}).items():
            data = copy.deepcopy(data or {})
            kind = data.pop("kind", type_name)
            factory = HANDLE_FACTORIES.get(kind, GenericCredentialHandle)
            handles[type_name] = factory(type_name, data)
        return handles


class CredentialScope:
    """Handle cache owned by one session or workflow run.

    Handles are fetched from the provider on first use and shared by every
    node execution inside the scope. release() disconnects each fetched
    handle exactly once.

    Usage:
        with CredentialScope(provider, "org-1") as scope:
            handle = scope.connected("sqlite")
            rows = handle.query("SELECT 1")
    """

    def __init__(self, provider: CredentialProvider | None, organization_id: str):
        self.provider = provider
        self.organization_id = organization_id
        self._handles: dict[str, CredentialHandle] | None = None
        self._connected: set[str] = set()
        self._released = False
        self._lock = threading.RLock()

    @property
    def released(self) -> bool:
        return self._released

    def _load(self) -> dict[str, CredentialHandle]:
        with self._lock:
            if self._released:
                raise CredentialError("Credential scope has been released")
            if self._handles is None:
                if self.provider is None:
                    self._handles = {}
                else:
                    self._handles = dict(self.provider.get_credentials(self.organization_id))
                logger.debug(
                    f"Loaded {len(self._handles)} credentials for organization {self.organization_id}"
                )
            return self._handles

    def get(self, type_name: str) -> CredentialHandle:
        handles = self._load()
        if type_name not in handles:
            raise CredentialError(
                f"No credential of type '{type_name}' for organization '{self.organization_id}'"
            )
        return handles[type_name]

    def data(self, type_name: str) -> dict[str, Any]:
        """Copy of the decrypted credential configuration."""
        return copy.deepcopy(self.get(type_name).data)

    def connected(self, type_name: str) -> CredentialHandle:
        """Handle with connect() called once for this scope."""
        with self._lock:
            handle = self.get(type_name)
            if type_name not in self._connected:
                try:
                    handle.connect()
                except CredentialError:
                    raise
                except Exception as e:
                    raise CredentialError(f"Failed to connect credential '{type_name}': {e}") from e
                self._connected.add(type_name)
            return handle

    def release(self) -> None:
        """Disconnect every fetched handle once. Idempotent."""
        with self._lock:
            if self._released:
                return
            self._released = True
            handles, self._handles = self._handles or {}, None
        for type_name, handle in handles.items():
            try:
                handle.disconnect()
            except Exception as e:
                logger.warning(f"Failed to disconnect credential '{type_name}': {e}")
        if handles:
            logger.debug(f"Released {len(handles)} credentials for organization {self.organization_id}")

    def __enter__(self) -> CredentialScope:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
