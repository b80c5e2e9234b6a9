from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping

READING_BASE_URL = "https://w1.xianmijingzang.com/wap/tripitaka/id/43/subid/"


class VolumeStatus(str, Enum):
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class SutraSection:
    subid: int
    part: int
    title: str
    scrolls: int


# 般若部, collection 43 on xianmijingzang.
CATALOG_SECTIONS: tuple[SutraSection, ...] = (
    SutraSection(subid=67, part=1, title="大般若波羅蜜多經", scrolls=200),
)


@dataclass(frozen=True, slots=True)
class Volume:
    id: str
    part: int
    scroll: int
    volume_number: str
    volume_title: str
    reading_url: str
    book_id: int
    status: VolumeStatus = VolumeStatus.UNCLAIMED
    claimer_name: str | None = None
    claimer_phone: str | None = None
    planned_days: int | None = None
    claimed_at: datetime | None = None
    expected_completion_date: datetime | None = None
    remarks: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "part": self.part,
            "scroll": self.scroll,
            "bookId": self.book_id,
            "volumeNumber": self.volume_number,
            "volumeTitle": self.volume_title,
            "status": self.status.value,
            "claimerName": self.claimer_name,
            "claimerPhone": self.claimer_phone,
            "plannedDays": self.planned_days,
            "claimedAt": format_timestamp(self.claimed_at),
            "expectedCompletionDate": format_timestamp(self.expected_completion_date),
            "readingUrl": self.reading_url,
            "remarks": self.remarks,
        }


def _section_volumes(section: SutraSection) -> list[Volume]:
    volumes: list[Volume] = []
    for scroll in range(1, section.scrolls + 1):
        volumes.append(
            Volume(
                id=f"{section.part}{scroll:03d}",
                part=section.part,
                scroll=scroll,
                volume_number=f"第{section.part}部-卷{scroll}",
                volume_title=f"{section.title} 卷{scroll}",
                reading_url=f"{READING_BASE_URL}{section.subid}/",
                book_id=section.subid,
            )
        )
    return volumes


def generate_catalog(
    sections: tuple[SutraSection, ...] | list[SutraSection] = CATALOG_SECTIONS,
) -> list[Volume]:
    """Build every volume from the section definitions, all unclaimed.

    The catalog is never cached: callers regenerate it so that edits to the
    section list take effect on the next read.
    """
    volumes: list[Volume] = []
    for section in sections:
        volumes.extend(_section_volumes(section))
    return volumes


def find_section(
    part: int,
    sections: tuple[SutraSection, ...] | list[SutraSection] = CATALOG_SECTIONS,
) -> SutraSection | None:
    for section in sections:
        if section.part == part:
            return section
    return None


def parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_planned_days(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def derive_status(volume: Volume, now: datetime) -> VolumeStatus:
    if volume.expected_completion_date is not None and now >= volume.expected_completion_date:
        return VolumeStatus.COMPLETED
    if volume.claimer_name:
        return VolumeStatus.CLAIMED
    return VolumeStatus.UNCLAIMED


def with_status(volume: Volume, now: datetime) -> Volume:
    status = derive_status(volume, now)
    if status is volume.status:
        return volume
    return replace(volume, status=status)


def overlay_claim(volume: Volume, record: Mapping[str, object]) -> Volume:
    """Copy claimer and timing fields from a claim record onto a catalog volume.

    Accepts both claim-record payloads (``name``/``phone``) and cached volume
    payloads (``claimerName``/``claimerPhone``).
    """
    name = record.get("name", record.get("claimerName"))
    phone = record.get("phone", record.get("claimerPhone"))
    remarks = record.get("remarks")
    raw_status = record.get("status")
    try:
        stored_status = VolumeStatus(raw_status) if raw_status else VolumeStatus.CLAIMED
    except ValueError:
        stored_status = VolumeStatus.CLAIMED
    return replace(
        volume,
        status=stored_status,
        claimer_name=str(name) if name not in (None, "") else None,
        claimer_phone=str(phone) if phone not in (None, "") else None,
        planned_days=parse_planned_days(record.get("plannedDays")),
        claimed_at=parse_timestamp(record.get("claimedAt")),
        expected_completion_date=parse_timestamp(record.get("expectedCompletionDate")),
        remarks=str(remarks) if remarks not in (None, "") else None,
    )


def same_volume_id(left: object, right: object) -> bool:
    if left is None or right is None:
        return False
    return str(left).strip() == str(right).strip()
