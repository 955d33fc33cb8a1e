from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import StoreError

logger = logging.getLogger(__name__)

LEADERBOARD_FIELDS = "id,driver_name,points,profile_picture,created_at,updated_at"
RACE_SETTINGS_FIELDS = "id,next_race_location,next_race_date,race_description,circuit_image,created_at,updated_at"
RACE_SETTINGS_COLUMNS = ("next_race_location", "next_race_date", "race_description", "circuit_image")


class DataStore:
    """Persists leaderboard rows and the race settings row.

    Talks to Supabase (PostgREST) when ``SUPABASE_URL`` and a key are set,
    otherwise keeps the same rows in local JSON files under ``data_dir``.
    Rows are plain dicts with the snake_case column names of the tables.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        default_dir = os.getenv("EVERGREEN_DATA_DIR") or (Path(__file__).parent.parent / "data")
        self.data_dir = Path(data_dir or default_dir)

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.supabase_leaderboard_table = os.getenv("SUPABASE_LEADERBOARD_TABLE", "leaderboard")
        self.supabase_race_settings_table = os.getenv("SUPABASE_RACE_SETTINGS_TABLE", "race_settings")
        self.local_leaderboard_path = self.data_dir / "leaderboard_local.json"
        self.local_race_settings_path = self.data_dir / "race_settings_local.json"
        self._lock = threading.Lock()

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Leaderboard

    def fetch_leaderboard(self) -> List[Dict[str, Any]]:
        if not self.uses_supabase:
            rows = self._read_rows(self.local_leaderboard_path)
            return sorted(rows, key=lambda row: (-int(row.get("points") or 0), int(row.get("id") or 0)))

        return self._supabase_request(
            "GET",
            self.supabase_leaderboard_table,
            params={"select": LEADERBOARD_FIELDS, "order": "points.desc,id.asc"},
            action="fetch leaderboard",
        )

    def fetch_leaderboard_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        if not self.uses_supabase:
            return self._find_row(self.local_leaderboard_path, entry_id)

        rows = self._supabase_request(
            "GET",
            self.supabase_leaderboard_table,
            params={"select": LEADERBOARD_FIELDS, "id": f"eq.{entry_id}", "limit": 1},
            action="fetch leaderboard entry",
        )
        return rows[0] if rows else None

    def create_leaderboard_entry(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if not self.uses_supabase:
            return self._insert_row(self.local_leaderboard_path, record)

        now = self._utc_now_iso()
        rows = self._supabase_request(
            "POST",
            self.supabase_leaderboard_table,
            params={"select": LEADERBOARD_FIELDS},
            payload={**record, "created_at": now, "updated_at": now},
            prefer="return=representation",
            action="create leaderboard entry",
        )
        if not rows:
            raise StoreError("Unexpected response when creating leaderboard entry")
        return rows[0]

    def update_leaderboard_entry(self, entry_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.uses_supabase:
            return self._update_row(self.local_leaderboard_path, entry_id, changes)

        rows = self._supabase_request(
            "PATCH",
            self.supabase_leaderboard_table,
            params={"select": LEADERBOARD_FIELDS, "id": f"eq.{entry_id}"},
            payload={**changes, "updated_at": self._utc_now_iso()},
            prefer="return=representation",
            action="update leaderboard entry",
        )
        return rows[0] if rows else None

    def delete_leaderboard_entry(self, entry_id: int) -> bool:
        if not self.uses_supabase:
            return self._delete_row(self.local_leaderboard_path, entry_id)

        rows = self._supabase_request(
            "DELETE",
            self.supabase_leaderboard_table,
            params={"id": f"eq.{entry_id}", "select": "id"},
            prefer="return=representation",
            action="delete leaderboard entry",
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Race settings

    def fetch_race_settings(self) -> Optional[Dict[str, Any]]:
        """Return the first settings row (lowest id) or None."""
        if not self.uses_supabase:
            rows = self._read_rows(self.local_race_settings_path)
            rows.sort(key=lambda row: int(row.get("id") or 0))
            return rows[0] if rows else None

        rows = self._supabase_request(
            "GET",
            self.supabase_race_settings_table,
            params={"select": RACE_SETTINGS_FIELDS, "order": "id.asc", "limit": 1},
            action="fetch race settings",
        )
        return rows[0] if rows else None

    def create_race_settings(self, record: Dict[str, Any] | None = None) -> Dict[str, Any]:
        payload = {column: None for column in RACE_SETTINGS_COLUMNS}
        payload.update(record or {})

        if not self.uses_supabase:
            return self._insert_row(self.local_race_settings_path, payload)

        now = self._utc_now_iso()
        rows = self._supabase_request(
            "POST",
            self.supabase_race_settings_table,
            params={"select": RACE_SETTINGS_FIELDS},
            payload={**payload, "created_at": now, "updated_at": now},
            prefer="return=representation",
            action="create race settings",
        )
        if not rows:
            raise StoreError("Unexpected response when creating race settings")
        return rows[0]

    def update_race_settings(self, settings_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.uses_supabase:
            return self._update_row(self.local_race_settings_path, settings_id, changes)

        rows = self._supabase_request(
            "PATCH",
            self.supabase_race_settings_table,
            params={"select": RACE_SETTINGS_FIELDS, "id": f"eq.{settings_id}"},
            payload={**changes, "updated_at": self._utc_now_iso()},
            prefer="return=representation",
            action="update race settings",
        )
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Local backlog synchronisation

    def sync_local_backlog(self) -> Dict[str, Any]:
        """Push locally stored rows to Supabase, keeping their ids."""
        if not self.uses_supabase:
            raise StoreError("Supabase is not configured; set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")

        return {
            "leaderboard": self._sync_table(self.local_leaderboard_path, self.supabase_leaderboard_table),
            "raceSettings": self._sync_table(self.local_race_settings_path, self.supabase_race_settings_table),
        }

    def local_backlog(self) -> Dict[str, int]:
        """Number of rows sitting in the local JSON files, per table."""
        return {
            "leaderboard": len(self._read_rows(self.local_leaderboard_path)),
            "raceSettings": len(self._read_rows(self.local_race_settings_path)),
        }

    def _sync_table(self, path: Path, table: str) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"synced": 0, "remaining": 0, "errors": []}
        rows = self._read_rows(path, strict=True)
        if not rows:
            self._remove_local_file(path)
            return stats

        remaining: List[Dict[str, Any]] = []
        for row in rows:
            try:
                self._supabase_request(
                    "POST",
                    table,
                    params={"on_conflict": "id"},
                    payload=row,
                    prefer="resolution=merge-duplicates,return=minimal",
                    action=f"sync {table} row {row.get('id')}",
                )
            except StoreError as exc:
                stats["errors"].append(str(exc))
                remaining.append(row)
                continue
            stats["synced"] += 1

        stats["remaining"] = len(remaining)
        if remaining:
            self._write_json_file(path, remaining)
        else:
            self._remove_local_file(path)
        return stats

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _supabase_request(
        self,
        method: str,
        table: str,
        *,
        params: Dict[str, Any],
        action: str,
        payload: Dict[str, Any] | None = None,
        prefer: str | None = None,
    ) -> List[Dict[str, Any]]:
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer, include_content_profile=payload is not None)
        if payload is not None:
            headers["Content-Type"] = "application/json"

        try:
            with httpx.Client(timeout=10.0) as client:
                if method == "GET":
                    response = client.get(endpoint, params=params, headers=headers)
                elif method == "POST":
                    response = client.post(endpoint, params=params, json=payload, headers=headers)
                elif method == "PATCH":
                    response = client.patch(endpoint, params=params, json=payload, headers=headers)
                elif method == "DELETE":
                    response = client.delete(endpoint, params=params, headers=headers)
                else:
                    raise ValueError(f"Unsupported method {method}")
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_supabase_detail(exc.response)
            logger.warning("Supabase %s failed (%s): %s", action, exc.response.status_code, detail or exc)
            raise StoreError(f"Failed to {action}: {detail or exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s unavailable (%s)", action, exc)
            raise StoreError(f"Failed to {action}: {exc}") from exc

        try:
            rows = response.json() if response.content else []
        except ValueError as exc:
            logger.warning("Supabase %s returned an unreadable body (%s)", action, response.status_code)
            raise StoreError(f"Failed to {action}: unreadable response from Supabase") from exc

        if isinstance(rows, dict):
            return [rows]
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- internal local JSON helpers -----------------------------------------------

    def _read_rows(self, path: Path, strict: bool = False) -> List[Dict[str, Any]]:
        """Rows of a local table file.

        Reads fall back to an empty table when the file is unreadable. With
        ``strict`` (used before rewriting a file) they raise ``StoreError``
        instead, so a damaged file is never replaced by a fresh one.
        """
        data = self._read_json_file(path, [], strict=strict)
        if not isinstance(data, list):
            if strict:
                raise StoreError(f"Local data store {path} does not hold a list of rows")
            return []
        return [row for row in data if isinstance(row, dict)]

    def _find_row(self, path: Path, row_id: int) -> Optional[Dict[str, Any]]:
        for row in self._read_rows(path):
            if str(row.get("id")) == str(row_id):
                return row
        return None

    def _insert_row(self, path: Path, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._read_rows(path, strict=True)
            next_id = max((int(row.get("id") or 0) for row in rows), default=0) + 1
            now = self._utc_now_iso()
            row = {**record, "id": next_id, "created_at": now, "updated_at": now}
            rows.append(row)
            self._write_json_file(path, rows)
        return dict(row)

    def _update_row(self, path: Path, row_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._read_rows(path, strict=True)
            for index, row in enumerate(rows):
                if str(row.get("id")) != str(row_id):
                    continue
                updated = {**row, **changes, "id": row.get("id"), "updated_at": self._utc_now_iso()}
                rows[index] = updated
                self._write_json_file(path, rows)
                return dict(updated)
        return None

    def _delete_row(self, path: Path, row_id: int) -> bool:
        with self._lock:
            rows = self._read_rows(path, strict=True)
            kept = [row for row in rows if str(row.get("id")) != str(row_id)]
            if len(kept) == len(rows):
                return False
            self._write_json_file(path, kept)
        return True

    def _read_json_file(self, path: Path, default: Any, strict: bool = False) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError) as exc:
            if strict:
                logger.error("Refusing to rewrite unreadable local data store %s: %s", path, exc)
                raise StoreError(f"Local data store {path} is unreadable") from exc
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        # temp file in the same directory, then os.replace over the target
        temp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_name = handle.name
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            if temp_name is not None:
                Path(temp_name).unlink(missing_ok=True)
            raise StoreError(f"Failed to write local data store {path}") from exc

    def _remove_local_file(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - unlikely but logged for diagnosis
            logger.warning("Failed to remove local data store %s: %s", path, exc)

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
