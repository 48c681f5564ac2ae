#!/usr/bin/env python3
"""
Persisted session store.

One JSON document holds two tables:
- ``oauth_sessions``: per-connection OAuth record (tokens, code_verifier,
  client_info, authorization_url, state)
- ``connections``: saved connection rows (id, url, name, status) used to
  reconnect after a restart

Writes go to a temporary file that is renamed into place, so a crash never
leaves a truncated document behind.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = ("tokens", "code_verifier", "client_info", "authorization_url", "state")


class SessionStore:
    """JSON-file backed store for OAuth sessions and connection rows"""

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {"oauth_sessions": {}, "connections": {}}
        self._load()

    # --------------- OAuth sessions ---------------
    def get_credentials(self, connection_id: str) -> Optional[Dict[str, Any]]:
        record = self._data["oauth_sessions"].get(connection_id)
        return dict(record) if record is not None else None

    def upsert_credentials(self, connection_id: str, **values: Any) -> None:
        """Merge the given fields into the record; None values leave fields untouched"""
        unknown = set(values) - set(CREDENTIAL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown credential fields: {sorted(unknown)}")
        now = time.time()
        record = self._data["oauth_sessions"].setdefault(
            connection_id, {"connection_id": connection_id, "created_at": now}
        )
        for key, value in values.items():
            if value is not None:
                record[key] = value
        record["updated_at"] = now
        self._save()

    def clear_credential_field(self, connection_id: str, field_name: str) -> None:
        if field_name not in CREDENTIAL_FIELDS:
            raise ValueError(f"Unknown credential field: {field_name}")
        record = self._data["oauth_sessions"].get(connection_id)
        if record is None or field_name not in record:
            return
        del record[field_name]
        record["updated_at"] = time.time()
        self._save()

    def delete_credentials(self, connection_id: str) -> None:
        if self._data["oauth_sessions"].pop(connection_id, None) is not None:
            self._save()

    def cleanup_stale_credentials(self, max_age: float) -> int:
        """Delete credential records older than max_age with no saved connection row"""
        cutoff = time.time() - max_age
        stale = [
            connection_id
            for connection_id, record in self._data["oauth_sessions"].items()
            if record.get("updated_at", 0) < cutoff and connection_id not in self._data["connections"]
        ]
        for connection_id in stale:
            del self._data["oauth_sessions"][connection_id]
        if stale:
            self._save()
            logger.info(f"Cleaned up {len(stale)} stale OAuth sessions")
        return len(stale)

    # --------------- Connection rows ---------------
    def get_connection(self, connection_id: str) -> Optional[Dict[str, Any]]:
        row = self._data["connections"].get(connection_id)
        return dict(row) if row is not None else None

    def list_connections(self) -> List[Dict[str, Any]]:
        """All saved rows, most recently updated first"""
        rows = [dict(row) for row in self._data["connections"].values()]
        rows.sort(key=lambda row: row.get("updated_at", 0), reverse=True)
        return rows

    def upsert_connection(self, connection_id: str, url: str, name: str, status: str) -> None:
        now = time.time()
        row = self._data["connections"].setdefault(connection_id, {"id": connection_id, "created_at": now})
        row.update({"url": url, "name": name, "status": status, "updated_at": now})
        self._save()

    def update_status(self, connection_id: str, status: str) -> None:
        row = self._data["connections"].get(connection_id)
        if row is None:
            return
        row["status"] = status
        row["updated_at"] = time.time()
        self._save()

    def delete_connection(self, connection_id: str) -> None:
        if self._data["connections"].pop(connection_id, None) is not None:
            self._save()

    # --------------- Internal helpers ---------------
    def _load(self) -> None:
        if not self.file_path.exists():
            return
        try:
            with open(self.file_path, "r") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        except (OSError, ValueError) as e:
            # Corrupted file: back it up and start fresh
            backup = self.file_path.with_suffix(".invalid")
            logger.warning(f"Session store {self.file_path} unreadable ({e}); moving it to {backup}")
            os.replace(self.file_path, backup)
            return
        for table in ("oauth_sessions", "connections"):
            if isinstance(data.get(table), dict):
                self._data[table] = data[table]
        logger.info(
            f"Session store loaded from {self.file_path}: "
            f"{len(self._data['connections'])} connections, {len(self._data['oauth_sessions'])} OAuth sessions"
        )

    def _save(self) -> None:
        """Write JSON atomically: temporary file, then rename into place"""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(prefix="mcp_bridge_", suffix=".tmp", dir=str(self.file_path.parent))
        try:
            with os.fdopen(tmp_fd, "w") as tmp_f:
                json.dump(self._data, tmp_f, indent=2)
            os.replace(tmp_path, self.file_path)
        except Exception:
            os.unlink(tmp_path)
            raise
