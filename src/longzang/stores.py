from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

import requests

from .catalog import same_volume_id
from .errors import Conflict, Unavailable

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "longzang_tripitaka_volumes_v13"
CLAIMS_FILENAME = "claims.json"
UNIQUE_VIOLATION_CODE = "23505"


class ClaimStore(Protocol):
    def fetch_all(self, timeout: float | None = None) -> list[dict[str, object]]:
        ...

    def exists(self, volume_id: str, timeout: float | None = None) -> bool:
        ...

    def insert(self, record: dict[str, object], timeout: float | None = None) -> dict[str, object]:
        ...


def normalize_claims_payload(payload: object) -> list[dict[str, object]]:
    """Return claim rows from either a bare array or a ``{"data": [...]}`` wrapper."""
    rows = payload
    if isinstance(payload, dict):
        rows = payload.get("data")
    if not isinstance(rows, list):
        raise Unavailable(
            "认领数据格式异常",
            detail=f"Unexpected claim store payload: {type(payload).__name__}",
        )
    return [row for row in rows if isinstance(row, dict)]


class RemoteClaimStore:
    """Claims table behind a PostgREST-style REST endpoint.

    The table is expected to carry a unique constraint on ``volumeId``; a
    duplicate insert comes back as HTTP 409 or PostgreSQL code 23505.
    """

    def __init__(
        self,
        url: str,
        key: str | None = None,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.key = key
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.key:
            headers["Authorization"] = f"Bearer {self.key}"
            headers["apikey"] = self.key
        return headers

    def _get_rows(self, params: dict[str, str] | None, timeout: float | None) -> list[dict[str, object]]:
        try:
            resp = self._session.get(
                self.url,
                params=params,
                headers=self._headers(),
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise Unavailable("认领数据暂时无法读取", detail=str(exc)) from exc
        if resp.status_code != 200:
            raise Unavailable(
                "认领数据暂时无法读取",
                detail=f"claim store responded with status {resp.status_code}: {resp.text}",
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise Unavailable("认领数据格式异常", detail="claim store returned invalid JSON") from exc
        return normalize_claims_payload(payload)

    def fetch_all(self, timeout: float | None = None) -> list[dict[str, object]]:
        return self._get_rows(None, timeout)

    def exists(self, volume_id: str, timeout: float | None = None) -> bool:
        rows = self._get_rows({"volumeId": f"eq.{volume_id}"}, timeout)
        # Stores without filter support return every row.
        return any(same_volume_id(row.get("volumeId"), volume_id) for row in rows)

    def insert(self, record: dict[str, object], timeout: float | None = None) -> dict[str, object]:
        headers = self._headers()
        headers["Prefer"] = "return=representation"
        try:
            resp = self._session.post(self.url, json=record, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            raise Unavailable("认领提交失败，请稍后重试", detail=str(exc)) from exc
        if resp.status_code == 409 or (
            400 <= resp.status_code < 500 and UNIQUE_VIOLATION_CODE in resp.text
        ):
            raise Conflict("该卷已被认领", detail=resp.text)
        if not 200 <= resp.status_code < 300:
            raise Unavailable(
                "认领提交失败，请稍后重试",
                detail=f"claim store responded with status {resp.status_code}: {resp.text}",
            )
        stored = dict(record)
        try:
            payload = resp.json()
        except ValueError:
            return stored
        try:
            rows = normalize_claims_payload(payload)
        except Unavailable:
            return stored
        for row in rows:
            if same_volume_id(row.get("volumeId"), record.get("volumeId")):
                stored.update(row)
                break
        return stored


class FileClaimStore:
    """JSON-array claims file used when no remote store is configured."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> list[dict[str, object]]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise Unavailable("认领数据暂时无法读取", detail=f"{self.path}: {exc}") from exc
        return normalize_claims_payload(raw)

    def _write(self, rows: list[dict[str, object]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(rows, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise Unavailable("认领提交失败，请稍后重试", detail=f"{self.path}: {exc}") from exc

    def fetch_all(self, timeout: float | None = None) -> list[dict[str, object]]:
        with self._lock:
            return self._read()

    def exists(self, volume_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            rows = self._read()
        return any(same_volume_id(row.get("volumeId"), volume_id) for row in rows)

    def insert(self, record: dict[str, object], timeout: float | None = None) -> dict[str, object]:
        with self._lock:
            rows = self._read()
            if any(same_volume_id(row.get("volumeId"), record.get("volumeId")) for row in rows):
                raise Conflict("该卷已被认领")
            stored = dict(record)
            rows.append(stored)
            self._write(rows)
        return dict(stored)


class FallbackCache:
    """Last reconciled view kept on disk for when the claim store is unreachable.

    Advisory only. The file name carries a versioned storage key; bumping the
    key discards every previously cached view.
    """

    def __init__(self, data_dir: Path, storage_key: str = DEFAULT_STORAGE_KEY) -> None:
        self.path = data_dir / f"{storage_key}.json"

    def load(self) -> list[dict[str, object]] | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read fallback cache %s: %s", self.path, exc)
            return None
        if not isinstance(raw, list):
            logger.warning("Ignoring fallback cache %s: expected a list", self.path)
            return None
        return [entry for entry in raw if isinstance(entry, dict)]

    def save(self, volumes: list[dict[str, object]]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(volumes, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Failed to write fallback cache %s: %s", self.path, exc)
            return False
        return True
