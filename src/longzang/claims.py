from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .cache import TTLCache
from .catalog import (
    CATALOG_SECTIONS,
    SutraSection,
    Volume,
    VolumeStatus,
    format_timestamp,
    generate_catalog,
    overlay_claim,
    parse_planned_days,
    parse_timestamp,
    same_volume_id,
    with_status,
)
from .errors import Conflict, InvalidArgument, NotFound, Unavailable
from .notify import WebhookNotifier
from .stores import ClaimStore, FallbackCache

logger = logging.getLogger(__name__)

DEFAULT_PLANNED_DAYS = 7
DEFAULT_TIMEZONE = "Asia/Shanghai"
CLAIMS_CACHE_KEY = "claims"
MAX_REMARKS_LENGTH = 500
_PHONE_PATTERN = re.compile(r"^[0-9]{8,11}$")
_PHONE_SEPARATORS = re.compile(r"[\s\-]+")


@dataclass(slots=True)
class ClaimRequest:
    volume_id: str
    name: str
    phone: str
    planned_days: object = None
    reading_url: str | None = None
    remarks: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ClaimRequest":
        volume_id = payload.get("volumeId")
        if volume_id is None or not str(volume_id).strip():
            raise InvalidArgument("缺少卷号")
        name = payload.get("name")
        phone = payload.get("phone")
        reading_url = payload.get("readingUrl")
        remarks = payload.get("remarks")
        return cls(
            volume_id=str(volume_id).strip(),
            name=name if isinstance(name, str) else "",
            phone=str(phone) if isinstance(phone, (str, int)) and not isinstance(phone, bool) else "",
            planned_days=payload.get("plannedDays"),
            reading_url=reading_url if isinstance(reading_url, str) else None,
            remarks=remarks if isinstance(remarks, str) else None,
        )


def local_clock(tz_name: str = DEFAULT_TIMEZONE) -> Callable[[], datetime]:
    try:
        zone = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown time zone %r, using the system local time", tz_name)

        def _system_now() -> datetime:
            return datetime.now().astimezone()

        return _system_now

    def _now() -> datetime:
        return datetime.now(zone)

    return _now


def add_calendar_days(moment: datetime, days: int) -> datetime:
    # Aware arithmetic keeps the tzinfo and the wall-clock time, so a claim at
    # 21:30 on day D finishes at 21:30 on day D+n even across offset changes.
    return moment + timedelta(days=days)


def normalize_phone(raw: str | None) -> str:
    phone = _PHONE_SEPARATORS.sub("", raw or "")
    if not _PHONE_PATTERN.match(phone):
        raise InvalidArgument("请输入8至11位数字的手机号")
    return phone


def validate_planned_days(raw: object) -> int:
    if raw is None or raw == "":
        return DEFAULT_PLANNED_DAYS
    days = parse_planned_days(raw)
    if days is None or days <= 0:
        raise InvalidArgument("计划天数须为正整数")
    return days


def summarize(volumes: list[Volume]) -> dict[str, int]:
    counts = Counter(volume.status for volume in volumes)
    return {
        "total": len(volumes),
        VolumeStatus.UNCLAIMED.value: counts.get(VolumeStatus.UNCLAIMED, 0),
        VolumeStatus.CLAIMED.value: counts.get(VolumeStatus.CLAIMED, 0),
        VolumeStatus.COMPLETED.value: counts.get(VolumeStatus.COMPLETED, 0),
    }


def filter_volumes(
    volumes: list[Volume],
    status: VolumeStatus | None = None,
    search: str | None = None,
) -> list[Volume]:
    """Volumes matching ``status`` and containing ``search`` in their title or number."""
    term = (search or "").strip()
    return [
        volume
        for volume in volumes
        if (status is None or volume.status is status)
        and (not term or term in volume.volume_title or term in volume.volume_number)
    ]


def _index_by_volume_id(rows: list[dict[str, object]], key: str) -> dict[str, dict[str, object]]:
    index: dict[str, dict[str, object]] = {}
    for row in rows:
        value = row.get(key)
        if value is None:
            continue
        index.setdefault(str(value).strip(), row)
    return index


class ClaimService:
    """Reconciles the generated catalog with persisted claims.

    The claim store is the source of truth. The fallback cache only serves
    reads while the store is unreachable and may lag behind it.
    """

    def __init__(
        self,
        store: ClaimStore,
        fallback: FallbackCache,
        *,
        notifier: WebhookNotifier | None = None,
        claims_cache: TTLCache | None = None,
        clock: Callable[[], datetime] | None = None,
        store_timeout: float = 10.0,
        sections: tuple[SutraSection, ...] = CATALOG_SECTIONS,
    ) -> None:
        self.store = store
        self.fallback = fallback
        self.notifier = notifier
        self.claims_cache = claims_cache or TTLCache(60.0, max_entries=8)
        self.clock = clock or local_clock()
        self.store_timeout = store_timeout
        self.sections = sections
        self.last_known_claims: list[dict[str, object]] | None = None

    def catalog(self) -> list[Volume]:
        return generate_catalog(self.sections)

    def find_volume(self, volume_id: str) -> Volume | None:
        for volume in self.catalog():
            if same_volume_id(volume.id, volume_id):
                return volume
        return None

    def fetch_claims(self, force_fresh: bool = False) -> list[dict[str, object]]:
        if not force_fresh:
            cached = self.claims_cache.get(CLAIMS_CACHE_KEY)
            if cached is not None:
                return list(cached)
        rows = self.store.fetch_all(timeout=self.store_timeout)
        self.claims_cache.set(CLAIMS_CACHE_KEY, rows)
        self.last_known_claims = rows
        return list(rows)

    def list_volumes(self, force_fresh: bool = False) -> list[Volume]:
        now = self.clock()
        catalog = self.catalog()
        try:
            rows = self.fetch_claims(force_fresh=force_fresh)
        except Unavailable as exc:
            logger.warning("Claim store unavailable, reading fallback cache: %s", exc.detail or exc)
            return self._volumes_from_fallback(catalog, now)

        records = _index_by_volume_id(rows, "volumeId")
        volumes: list[Volume] = []
        modified = False
        for volume in catalog:
            record = records.get(volume.id)
            if record is None:
                volumes.append(with_status(volume, now))
                continue
            merged = overlay_claim(volume, record)
            current = with_status(merged, now)
            if current.status is not merged.status:
                modified = True
            volumes.append(current)

        payload = [volume.to_payload() for volume in volumes]
        if modified or self.fallback.load() != payload:
            self.fallback.save(payload)
        return volumes

    def _volumes_from_fallback(self, catalog: list[Volume], now: datetime) -> list[Volume]:
        cached = self.fallback.load()
        if cached is None:
            return [with_status(volume, now) for volume in catalog]
        entries = _index_by_volume_id(
            [entry for entry in cached if entry.get("status") != VolumeStatus.UNCLAIMED.value],
            "id",
        )
        volumes: list[Volume] = []
        for volume in catalog:
            entry = entries.get(volume.id)
            if entry is not None:
                volume = overlay_claim(volume, entry)
            volumes.append(with_status(volume, now))
        return volumes

    def claim_volume(self, request: ClaimRequest) -> dict[str, object]:
        volume = self.find_volume(request.volume_id)
        if volume is None:
            raise NotFound("未找到该卷")
        name = (request.name or "").strip()
        if not name:
            raise InvalidArgument("请填写姓名")
        phone = normalize_phone(request.phone)
        planned_days = validate_planned_days(request.planned_days)
        remarks = (request.remarks or "").strip() or None
        if remarks and len(remarks) > MAX_REMARKS_LENGTH:
            raise InvalidArgument(f"备注不能超过{MAX_REMARKS_LENGTH}字")

        claimed_at = self.clock()
        expected = add_calendar_days(claimed_at, planned_days)
        record: dict[str, object] = {
            "volumeId": volume.id,
            "volumeNumber": volume.volume_number,
            "volumeTitle": volume.volume_title,
            "name": name,
            "phone": phone,
            "plannedDays": planned_days,
            "readingUrl": volume.reading_url,
            "claimedAt": format_timestamp(claimed_at),
            "expectedCompletionDate": format_timestamp(expected),
            "status": VolumeStatus.CLAIMED.value,
            "remarks": remarks,
        }

        try:
            if self.store.exists(volume.id, timeout=self.store_timeout):
                raise Conflict("该卷已被认领")
            stored = self.store.insert(record, timeout=self.store_timeout)
        except Conflict:
            self.claims_cache.invalidate(CLAIMS_CACHE_KEY)
            logger.info("Claim rejected, volume %s already claimed", volume.id)
            raise
        except Unavailable as exc:
            logger.error("Claim for volume %s not stored: %s", volume.id, exc.detail or exc)
            raise

        self.claims_cache.invalidate(CLAIMS_CACHE_KEY)
        logger.info("Volume %s claimed for %s days", volume.id, planned_days)
        if self.notifier is not None:
            try:
                self.notifier.notify_claim(stored)
            except Exception:
                logger.exception("Failed to dispatch claim notification")
        return stored

    def export_claims(self, force_fresh: bool = True) -> list[dict[str, object]]:
        """Claim records with their status derived at the current time."""
        now = self.clock()
        rows = self.fetch_claims(force_fresh=force_fresh)
        exported: list[dict[str, object]] = []
        for row in rows:
            expected = parse_timestamp(row.get("expectedCompletionDate"))
            status = VolumeStatus.CLAIMED
            if expected is not None and now >= expected:
                status = VolumeStatus.COMPLETED
            entry = dict(row)
            entry["status"] = status.value
            exported.append(entry)
        return exported
