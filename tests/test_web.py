from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi import HTTPException

from longzang.catalog import SutraSection
from longzang.claims import ClaimService
from longzang.config import ServiceConfig
from longzang.errors import Conflict, Unavailable
from longzang.stores import FallbackCache
from longzang.web import create_app

SECTIONS = (SutraSection(subid=67, part=1, title="大般若波羅蜜多經", scrolls=3),)
CST = timezone(timedelta(hours=8))
SAMPLE_SCROLL = (
    "<html><body><p><i><span>rú</span><span>如<span>，</span></span></i>"
    "<i><span>shì</span><span>是</span></i></p></body></html>"
)


class _MemoryStore:
    def __init__(self) -> None:
        self.rows: list[dict[str, object]] = []
        self.down = False

    def fetch_all(self, timeout=None):
        if self.down:
            raise Unavailable("认领数据暂时无法读取", detail="offline")
        return [dict(row) for row in self.rows]

    def exists(self, volume_id, timeout=None):
        return any(str(row["volumeId"]) == str(volume_id) for row in self.rows)

    def insert(self, record, timeout=None):
        if self.down:
            raise Unavailable("认领提交失败，请稍后重试")
        if self.exists(record["volumeId"]):
            raise Conflict("该卷已被认领")
        self.rows.append(dict(record))
        return dict(record)


class _Scripture:
    def __init__(self, markup: str = SAMPLE_SCROLL, fail: bool = False) -> None:
        self.markup = markup
        self.fail = fail
        self.requests: list[tuple[int, int]] = []

    def fetch_markup(self, book_id: int, scroll: int) -> tuple[str, bool]:
        self.requests.append((book_id, scroll))
        if self.fail:
            raise Unavailable("经文暂时无法获取", detail="timeout")
        return self.markup, False


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


def _app(tmp_path: Path, store: _MemoryStore | None = None, scripture: _Scripture | None = None):
    store = store or _MemoryStore()
    service = ClaimService(
        store,
        FallbackCache(tmp_path),
        clock=lambda: datetime(2026, 5, 1, 9, 0, tzinfo=CST),
        sections=SECTIONS,
    )
    config = ServiceConfig(data_dir=tmp_path, admin_code="lotus")
    return create_app(config, service=service, scripture=scripture or _Scripture(), sections=SECTIONS)


def _claim_payload(volume_id: str = "1001") -> dict[str, object]:
    return {"volumeId": volume_id, "name": "张三", "phone": "13800000000", "plannedDays": 7}


def test_claim_endpoint_stores_claim(tmp_path: Path) -> None:
    store = _MemoryStore()
    app = _app(tmp_path, store)
    claim = _find_route(app, "/api/claim", "POST")

    response = claim(_claim_payload())

    assert response.status_code == 200
    payload = json.loads(response.body)
    assert payload["success"] is True
    assert payload["claim"]["volumeId"] == "1001"
    assert payload["claim"]["expectedCompletionDate"] == "2026-05-08T09:00:00+08:00"
    assert len(store.rows) == 1


def test_claim_endpoint_maps_errors_to_status_codes(tmp_path: Path) -> None:
    store = _MemoryStore()
    app = _app(tmp_path, store)
    claim = _find_route(app, "/api/claim", "POST")
    claim(_claim_payload())

    with pytest.raises(HTTPException) as conflict:
        claim(_claim_payload())
    assert conflict.value.status_code == 409

    with pytest.raises(HTTPException) as missing:
        claim({"name": "张三", "phone": "13800000000"})
    assert missing.value.status_code == 400

    with pytest.raises(HTTPException) as unknown:
        claim(_claim_payload("9001"))
    assert unknown.value.status_code == 400

    store.down = True
    with pytest.raises(HTTPException) as down:
        claim(_claim_payload("1002"))
    assert down.value.status_code == 500


def test_claims_endpoint_returns_data_and_last_known_on_failure(tmp_path: Path) -> None:
    store = _MemoryStore()
    app = _app(tmp_path, store)
    _find_route(app, "/api/claim", "POST")(_claim_payload())
    claims = _find_route(app, "/api/claims", "GET")

    response = claims(fresh=True)
    assert response.status_code == 200
    assert [row["volumeId"] for row in json.loads(response.body)["data"]] == ["1001"]

    store.down = True
    response = claims(fresh=True)
    payload = json.loads(response.body)
    assert response.status_code == 500
    assert payload["error"]
    assert [row["volumeId"] for row in payload["data"]] == ["1001"]


def test_volumes_endpoint_reports_summary(tmp_path: Path) -> None:
    app = _app(tmp_path)
    _find_route(app, "/api/claim", "POST")(_claim_payload("1002"))

    response = _find_route(app, "/api/volumes", "GET")(fresh=False, status=None, q=None)

    payload = json.loads(response.body)
    assert payload["summary"] == {"total": 3, "unclaimed": 2, "claimed": 1, "completed": 0}
    assert payload["volumes"][1]["claimerName"] == "张三"
    assert payload["volumes"][1]["status"] == "claimed"


def test_scripture_endpoint_returns_normalized_html(tmp_path: Path) -> None:
    scripture = _Scripture()
    app = _app(tmp_path, scripture=scripture)

    response = _find_route(app, "/api/scripture/{scroll}", "GET")("2", part=1)

    payload = json.loads(response.body)
    assert payload["scroll"] == 2
    assert payload["bookId"] == 67
    assert payload["cached"] is False
    assert 'class="unit"' in payload["html"]
    assert "<i>" not in payload["html"]
    assert scripture.requests == [(67, 2)]


@pytest.mark.parametrize(("scroll", "part"), [("0", 1), ("4", 1), ("abc", 1), ("1", 2)])
def test_scripture_endpoint_rejects_bad_scrolls(tmp_path: Path, scroll: str, part: int) -> None:
    scripture = _Scripture()
    app = _app(tmp_path, scripture=scripture)

    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/scripture/{scroll}", "GET")(scroll, part=part)

    assert excinfo.value.status_code == 400
    assert scripture.requests == []


def test_scripture_upstream_failure_is_500(tmp_path: Path) -> None:
    app = _app(tmp_path, scripture=_Scripture(fail=True))

    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/scripture/{scroll}", "GET")("1", part=1)

    assert excinfo.value.status_code == 500


def test_text_download(tmp_path: Path) -> None:
    app = _app(tmp_path)

    response = _find_route(app, "/api/scripture/{scroll}/txt", "GET")("1", part=1)

    assert response.body.decode("utf-8") == "如，是"
    assert response.media_type.startswith("text/plain")
    assert "filename*=UTF-8''" in response.headers["content-disposition"]


def test_pdf_download(tmp_path: Path) -> None:
    app = _app(tmp_path)

    response = _find_route(app, "/api/scripture/{scroll}/pdf", "GET")("1", part=1)

    assert response.media_type == "application/pdf"
    assert response.body.startswith(b"%PDF")


def test_admin_view_requires_code(tmp_path: Path) -> None:
    app = _app(tmp_path)
    view = _find_route(app, "/view", "GET")

    for code in (None, "", "wrong"):
        with pytest.raises(HTTPException) as excinfo:
            view(code=code)
        assert excinfo.value.status_code == 401


def test_admin_view_shows_claims(tmp_path: Path) -> None:
    app = _app(tmp_path)
    _find_route(app, "/api/claim", "POST")(_claim_payload())

    response = _find_route(app, "/view", "GET")(code="lotus")

    html = response.body.decode("utf-8")
    assert "张三" in html
    assert "13800000000" in html


def test_admin_csv_export(tmp_path: Path) -> None:
    app = _app(tmp_path)
    claim = _find_route(app, "/api/claim", "POST")
    claim(_claim_payload("1001"))
    claim(_claim_payload("1003"))
    export = _find_route(app, "/view.csv", "GET")

    with pytest.raises(HTTPException):
        export(code="nope")
    response = export(code="lotus")

    text = response.body.decode("utf-8")
    assert text.startswith("\ufeff")
    rows = list(csv.reader(io.StringIO(text[1:], newline="")))
    assert len(rows) == 3
    assert {row[0] for row in rows[1:]} == {"1001", "1003"}
    assert "attachment" in response.headers["content-disposition"]


def test_volumes_endpoint_filters_after_reconciliation(tmp_path: Path) -> None:
    app = _app(tmp_path)
    _find_route(app, "/api/claim", "POST")(_claim_payload("1002"))
    volumes = _find_route(app, "/api/volumes", "GET")

    claimed = json.loads(volumes(fresh=False, status="claimed", q=None).body)
    assert [volume["id"] for volume in claimed["volumes"]] == ["1002"]
    assert claimed["summary"]["total"] == 3

    searched = json.loads(volumes(fresh=False, status="all", q="卷3").body)
    assert [volume["id"] for volume in searched["volumes"]] == ["1003"]

    both = json.loads(volumes(fresh=False, status="unclaimed", q="卷2").body)
    assert both["volumes"] == []
    assert both["summary"] == {"total": 3, "unclaimed": 2, "claimed": 1, "completed": 0}


def test_volumes_endpoint_rejects_unknown_status(tmp_path: Path) -> None:
    app = _app(tmp_path)

    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/volumes", "GET")(fresh=False, status="lost", q=None)

    assert excinfo.value.status_code == 400


def test_admin_csv_filename_uses_campaign_date(tmp_path: Path) -> None:
    store = _MemoryStore()
    service = ClaimService(
        store,
        FallbackCache(tmp_path),
        clock=lambda: datetime(2026, 5, 1, 23, 30, tzinfo=CST),
        sections=SECTIONS,
    )
    app = create_app(
        ServiceConfig(data_dir=tmp_path, admin_code="lotus"),
        service=service,
        scripture=_Scripture(),
        sections=SECTIONS,
    )

    response = _find_route(app, "/view.csv", "GET")(code="lotus")

    assert "claims-2026-05-01.csv" in response.headers["content-disposition"]
