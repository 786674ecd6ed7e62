from __future__ import annotations

import copy
import os
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Callable, Protocol

from supabase import Client, create_client


class DatabaseError(RuntimeError):
    """Raised when a read or write against the backing store fails."""


class MalformedRecordError(DatabaseError):
    """Raised when a stored record does not match its schema."""


UpdateFn = Callable[[dict[str, Any] | None], dict[str, Any] | None]


@dataclass(frozen=True)
class TransactionResult:
    committed: bool
    value: dict[str, Any] | None


class DocumentStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any] | None) -> None: ...

    def update(self, key: str, partial: dict[str, Any]) -> None: ...

    def transact(self, key: str, fn: UpdateFn) -> TransactionResult: ...

    def append(self, list_key: str, value: dict[str, Any]) -> str: ...

    def list_items(self, list_key: str) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_role_key: str
    documents_table: str = "documents"
    lists_table: str = "document_lists"
    max_retries: int = 25

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        url = os.getenv("SUPABASE_URL", "").strip()
        service_role_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
        documents_table = os.getenv("SUPABASE_DOCUMENTS_TABLE", "documents").strip() or "documents"
        lists_table = os.getenv("SUPABASE_LISTS_TABLE", "document_lists").strip() or "document_lists"
        raw_retries = os.getenv("SUPABASE_MAX_RETRIES", "25").strip()

        if not url or not service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required environment variables.")
        try:
            max_retries = int(raw_retries)
        except ValueError as exc:
            raise ValueError("SUPABASE_MAX_RETRIES must be an integer value.") from exc
        if max_retries <= 0:
            raise ValueError("SUPABASE_MAX_RETRIES must be greater than 0.")

        return cls(
            url=url,
            service_role_key=service_role_key,
            documents_table=documents_table,
            lists_table=lists_table,
            max_retries=max_retries,
        )


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._lists: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._lock = Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._documents.get(key)
            return copy.deepcopy(value) if value is not None else None

    def set(self, key: str, value: dict[str, Any] | None) -> None:
        with self._lock:
            if value is None:
                self._documents.pop(key, None)
            else:
                self._documents[key] = copy.deepcopy(value)

    def update(self, key: str, partial: dict[str, Any]) -> None:
        with self._lock:
            merged = dict(self._documents.get(key) or {})
            merged.update(copy.deepcopy(partial))
            self._documents[key] = merged

    def transact(self, key: str, fn: UpdateFn) -> TransactionResult:
        # The whole read-modify-write runs under one lock, so no retry is needed.
        with self._lock:
            current = self._documents.get(key)
            proposed = fn(copy.deepcopy(current) if current is not None else None)
            if proposed is None:
                return TransactionResult(
                    committed=False,
                    value=copy.deepcopy(current) if current is not None else None,
                )
            self._documents[key] = copy.deepcopy(proposed)
            return TransactionResult(committed=True, value=copy.deepcopy(proposed))

    def append(self, list_key: str, value: dict[str, Any]) -> str:
        child_id = uuid.uuid4().hex
        with self._lock:
            self._lists.setdefault(list_key, []).append((child_id, copy.deepcopy(value)))
        return child_id

    def list_items(self, list_key: str) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(value) for _, value in self._lists.get(list_key, [])]


class SupabaseDocumentStore:
    def __init__(self, config: SupabaseConfig, client: Client | None = None) -> None:
        self.config = config
        self.client: Client = client or create_client(config.url, config.service_role_key)

    @staticmethod
    def _single_row(result: Any) -> dict[str, Any] | None:
        data = getattr(result, "data", None)
        if not data:
            return None
        if isinstance(data, list):
            return data[0] if data else None
        if isinstance(data, dict):
            return data
        return None

    @staticmethod
    def _rows(result: Any) -> list[dict[str, Any]]:
        data = getattr(result, "data", None)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        return []

    def _documents(self):
        return self.client.table(self.config.documents_table)

    def _read_row(self, key: str) -> dict[str, Any] | None:
        try:
            result = self._documents().select("*").eq("key", key).limit(1).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to read document '{key}': {exc}") from exc
        return self._single_row(result)

    def get(self, key: str) -> dict[str, Any] | None:
        row = self._read_row(key)
        if not row:
            return None
        value = row.get("value")
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any] | None) -> None:
        try:
            if value is None:
                self._documents().delete().eq("key", key).execute()
                return
            row = self._read_row(key)
            version = int(row.get("version") or 0) + 1 if row else 1
            self._documents().upsert(
                {"key": key, "value": value, "version": version, "updated_at": datetime.now(UTC).isoformat()},
                on_conflict="key",
            ).execute()
        except DatabaseError:
            raise
        except Exception as exc:
            raise DatabaseError(f"Failed to write document '{key}': {exc}") from exc

    def update(self, key: str, partial: dict[str, Any]) -> None:
        def merge(current: dict[str, Any] | None) -> dict[str, Any]:
            merged = dict(current or {})
            merged.update(partial)
            return merged

        self.transact(key, merge)

    def transact(self, key: str, fn: UpdateFn) -> TransactionResult:
        for _ in range(self.config.max_retries):
            row = self._read_row(key)
            current = row.get("value") if row else None
            version = int(row.get("version") or 0) if row else 0

            proposed = fn(copy.deepcopy(current) if current is not None else None)
            if proposed is None:
                return TransactionResult(committed=False, value=current)

            timestamp = datetime.now(UTC).isoformat()
            try:
                if row is None:
                    result = self._documents().insert(
                        {"key": key, "value": proposed, "version": 1, "updated_at": timestamp}
                    ).execute()
                else:
                    result = (
                        self._documents()
                        .update({"value": proposed, "version": version + 1, "updated_at": timestamp})
                        .eq("key", key)
                        .eq("version", version)
                        .execute()
                    )
            except Exception as exc:
                # A concurrent insert of the same key surfaces as a conflict error.
                if row is None:
                    continue
                raise DatabaseError(f"Conditional update of '{key}' failed: {exc}") from exc

            if self._single_row(result):
                return TransactionResult(committed=True, value=proposed)

        raise DatabaseError(f"Conditional update of '{key}' did not commit after {self.config.max_retries} attempts.")

    def append(self, list_key: str, value: dict[str, Any]) -> str:
        child_id = uuid.uuid4().hex
        payload = {
            "id": child_id,
            "list_key": list_key,
            "value": value,
            "created_at": datetime.now(UTC).isoformat(),
        }
        try:
            self.client.table(self.config.lists_table).insert(payload).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to append to '{list_key}': {exc}") from exc
        return child_id

    def list_items(self, list_key: str) -> list[dict[str, Any]]:
        try:
            result = (
                self.client.table(self.config.lists_table)
                .select("*")
                .eq("list_key", list_key)
                .order("created_at")
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to read list '{list_key}': {exc}") from exc
        return [row["value"] for row in self._rows(result) if isinstance(row.get("value"), dict)]
