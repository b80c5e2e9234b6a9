from __future__ import annotations

import hmac
import logging
from typing import Any
from urllib.parse import quote

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .cache import TTLCache
from .catalog import CATALOG_SECTIONS, SutraSection, VolumeStatus, find_section
from .claims import ClaimRequest, ClaimService, filter_volumes, local_clock, summarize
from .config import ServiceConfig
from .errors import LongzangError, Unavailable
from .export import claims_to_csv, render_admin_view
from .notify import WebhookNotifier
from .pdf import render_scripture_pdf
from .scripture import ScriptureClient, extract_plain_text, iter_units, normalize_scripture_html
from .stores import CLAIMS_FILENAME, FallbackCache, FileClaimStore, RemoteClaimStore

logger = logging.getLogger(__name__)


def build_claim_service(config: ServiceConfig) -> ClaimService:
    data_dir = config.data_dir.expanduser()
    if config.store_url:
        store = RemoteClaimStore(config.store_url, config.store_key)
    else:
        logger.warning(
            "No claim store URL configured; claims are kept in %s",
            data_dir / CLAIMS_FILENAME,
        )
        store = FileClaimStore(data_dir / CLAIMS_FILENAME)
    notifier = WebhookNotifier(config.webhook_url, config.webhook_secret)
    if not notifier.enabled:
        logger.info("Claim notifications disabled (no webhook configured)")
    return ClaimService(
        store,
        FallbackCache(data_dir, config.storage_key),
        notifier=notifier,
        claims_cache=TTLCache(config.claims_cache_ttl, max_entries=8),
        clock=local_clock(config.timezone),
        store_timeout=config.store_timeout,
    )


def build_scripture_client(config: ServiceConfig) -> ScriptureClient:
    return ScriptureClient(
        config.scripture_url_template,
        timeout=config.scripture_timeout,
        cache=TTLCache(config.scripture_cache_ttl, max_entries=256),
    )


def _attachment(filename: str, fallback: str) -> dict[str, str]:
    return {
        "Content-Disposition": (
            f'attachment; filename="{fallback}"; filename*=UTF-8\'\'{quote(filename)}'
        )
    }


def _resolve_scroll(scroll: str, part: int, sections: tuple[SutraSection, ...]) -> SutraSection:
    section = find_section(part, sections)
    if section is None:
        raise HTTPException(status_code=400, detail="无效的部号")
    try:
        scroll_number = int(scroll)
    except ValueError:
        raise HTTPException(status_code=400, detail="无效的卷号") from None
    if not 1 <= scroll_number <= section.scrolls:
        raise HTTPException(status_code=400, detail="无效的卷号")
    return section


def create_app(
    config: ServiceConfig,
    *,
    service: ClaimService | None = None,
    scripture: ScriptureClient | None = None,
    sections: tuple[SutraSection, ...] = CATALOG_SECTIONS,
) -> FastAPI:
    service = service or build_claim_service(config)
    scripture = scripture or build_scripture_client(config)
    admin_code = config.effective_admin_code()

    app = FastAPI(title="龍藏 認領")
    app.state.config = config
    app.state.service = service
    app.state.scripture = scripture
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _check_code(code: str | None) -> None:
        if code is None or not hmac.compare_digest(code.encode("utf-8"), admin_code.encode("utf-8")):
            raise HTTPException(status_code=401, detail="访问码错误")

    def _scripture_markup(section: SutraSection, scroll: int) -> tuple[str, bool]:
        try:
            return scripture.fetch_markup(section.subid, scroll)
        except Unavailable as exc:
            logger.warning("Scripture fetch failed for scroll %s: %s", scroll, exc.detail or exc)
            raise HTTPException(status_code=500, detail=exc.message) from exc

    @app.get("/")
    def index() -> JSONResponse:
        return JSONResponse(
            {
                "message": "龍藏 volume claiming service",
                "endpoints": {
                    "claim": "/api/claim",
                    "claims": "/api/claims",
                    "volumes": "/api/volumes",
                    "scripture": "/api/scripture/{scroll}",
                    "admin": "/view?code=...",
                },
            }
        )

    @app.post("/api/claim")
    def api_claim(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        try:
            request = ClaimRequest.from_payload(payload)
            claim = service.claim_volume(request)
        except LongzangError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
        return JSONResponse({"success": True, "claim": claim})

    @app.get("/api/claims")
    def api_claims(fresh: bool = Query(False)) -> JSONResponse:
        try:
            rows = service.fetch_claims(force_fresh=fresh)
        except Unavailable as exc:
            logger.warning("Claim listing failed: %s", exc.detail or exc)
            return JSONResponse(
                {"error": exc.message, "data": service.last_known_claims or []},
                status_code=500,
            )
        return JSONResponse({"data": rows})

    @app.get("/api/volumes")
    def api_volumes(
        fresh: bool = Query(False),
        status: str | None = Query(None),
        q: str | None = Query(None),
    ) -> JSONResponse:
        wanted: VolumeStatus | None = None
        if status and status != "all":
            try:
                wanted = VolumeStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail="无效的状态") from None
        volumes = service.list_volumes(force_fresh=fresh)
        matches = filter_volumes(volumes, wanted, q)
        return JSONResponse(
            {
                "volumes": [volume.to_payload() for volume in matches],
                "summary": summarize(volumes),
            }
        )

    @app.get("/api/scripture/{scroll}")
    def api_scripture(scroll: str, part: int = Query(1)) -> JSONResponse:
        section = _resolve_scroll(scroll, part, sections)
        markup, cached = _scripture_markup(section, int(scroll))
        return JSONResponse(
            {
                "html": normalize_scripture_html(markup),
                "scroll": int(scroll),
                "bookId": section.subid,
                "cached": cached,
            }
        )

    @app.get("/api/scripture/{scroll}/txt")
    def api_scripture_text(scroll: str, part: int = Query(1)) -> Response:
        section = _resolve_scroll(scroll, part, sections)
        markup, _ = _scripture_markup(section, int(scroll))
        text = extract_plain_text(markup)
        title = f"{section.title} 卷{int(scroll)}"
        return Response(
            content=text,
            media_type="text/plain; charset=utf-8",
            headers=_attachment(f"{title}.txt", f"scroll-{int(scroll)}.txt"),
        )

    @app.get("/api/scripture/{scroll}/pdf")
    def api_scripture_pdf(scroll: str, part: int = Query(1)) -> Response:
        section = _resolve_scroll(scroll, part, sections)
        markup, _ = _scripture_markup(section, int(scroll))
        title = f"{section.title} 卷{int(scroll)}"
        try:
            data = render_scripture_pdf(iter_units(normalize_scripture_html(markup)), title)
        except Exception as exc:
            logger.exception("PDF rendering failed for scroll %s", scroll)
            raise HTTPException(status_code=500, detail="PDF 生成失败") from exc
        return Response(
            content=data,
            media_type="application/pdf",
            headers=_attachment(f"{title}.pdf", f"scroll-{int(scroll)}.pdf"),
        )

    @app.get("/view", response_class=HTMLResponse)
    def admin_view(code: str | None = Query(None)) -> HTMLResponse:
        _check_code(code)
        volumes = service.list_volumes(force_fresh=True)
        return HTMLResponse(render_admin_view(volumes, summarize(volumes)))

    @app.get("/view.csv")
    def admin_csv(code: str | None = Query(None)) -> Response:
        _check_code(code)
        try:
            records = service.export_claims()
        except Unavailable as exc:
            logger.warning("CSV export failed: %s", exc.detail or exc)
            raise HTTPException(status_code=500, detail=exc.message) from exc
        stamp = service.clock().strftime("%Y-%m-%d")
        return Response(
            # BOM so spreadsheet apps pick UTF-8 for the Chinese columns.
            content="\ufeff" + claims_to_csv(records),
            media_type="text/csv; charset=utf-8",
            headers=_attachment(f"claims-{stamp}.csv", f"claims-{stamp}.csv"),
        )

    return app
