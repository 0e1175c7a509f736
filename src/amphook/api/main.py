from __future__ import annotations

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ..errors import ErrorKind, KeyFetchError
from ..keys.cache import KeyCache
from ..pipeline import SENDER_HEADER, IngestionPipeline
from ..settings import Settings, settings as default_settings
from ..store.persistence import JsonDirPersistence, PersistenceWriter
from ..store.submissions import SubmissionStore
from ..verify.signature import SignatureVerifier
from .models import ExportDocument, InboundSubmission, SubmissionFilter, SubmissionPage

logger = logging.getLogger(__name__)

STATUS_FOR_KIND = {
    ErrorKind.SIGNATURE_FORMAT: 400,
    ErrorKind.TIMESTAMP_EXPIRED: 401,
    ErrorKind.SIGNATURE_INVALID: 401,
    ErrorKind.KEY_UNAVAILABLE: 503,
    ErrorKind.KEY_FETCH: 503,
    ErrorKind.INVALID_FORM_DATA: 422,
}


@dataclass
class AppServices:
    config: Settings
    key_cache: KeyCache
    verifier: SignatureVerifier
    store: SubmissionStore
    pipeline: IngestionPipeline
    persistence: JsonDirPersistence | None = None
    writer: PersistenceWriter | None = None
    started_at: float = 0.0


def build_services(
    config: Settings | None = None,
    *,
    key_client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> AppServices:
    """Construct the explicit service graph for one process."""
    cfg = config or default_settings
    key_cache = KeyCache(cfg, client=key_client, clock=clock)
    verifier = SignatureVerifier(key_cache, cfg, clock=clock)
    persistence = writer = None
    if cfg.persistence == "file":
        persistence = JsonDirPersistence(cfg.submissions_dir())
        writer = PersistenceWriter(persistence, max_queue=cfg.persistence_queue_size)
    store = SubmissionStore(cfg.store_capacity, writer=writer)
    pipeline = IngestionPipeline(verifier, store, cfg)
    return AppServices(
        config=cfg,
        key_cache=key_cache,
        verifier=verifier,
        store=store,
        pipeline=pipeline,
        persistence=persistence,
        writer=writer,
        started_at=time.time(),
    )


def _services(request: Request) -> AppServices:
    return request.app.state.services


_basic = HTTPBasic(realm="AMP Webhook Admin")


def require_admin(request: Request, credentials: HTTPBasicCredentials = Depends(_basic)) -> str:  # noqa: B008
    cfg = _services(request).config
    ok_user = secrets.compare_digest(credentials.username.encode(), cfg.admin_username.encode())
    ok_pass = secrets.compare_digest(credentials.password.encode(), cfg.admin_password.encode())
    if not (ok_user and ok_pass):
        raise HTTPException(401, "invalid admin credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def _amp_response_headers(request: Request, cfg: Settings) -> dict[str, str]:
    headers: dict[str, str] = {}
    sender = request.headers.get(SENDER_HEADER)
    allowed = cfg.allowed_senders()
    if sender:
        if not allowed or sender.lower() in allowed:
            headers["AMP-Email-Allow-Sender"] = sender
    elif not allowed:
        headers["AMP-Email-Allow-Sender"] = "*"
    source_origin = request.query_params.get("__amp_source_origin")
    if source_origin:
        headers["AMP-Access-Control-Allow-Source-Origin"] = source_origin
        headers["Access-Control-Expose-Headers"] = "AMP-Access-Control-Allow-Source-Origin"
    return headers


admin = APIRouter(prefix="/admin/api", dependencies=[Depends(require_admin)])


@admin.get("/submissions")
def admin_list_submissions(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=1000),
    form_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    validated_only: bool = False,
    sender: str | None = None,
    search: str | None = None,
):
    store = _services(request).store
    flt = SubmissionFilter(form_id=form_id, start=start, end=end, validated_only=validated_only, sender=sender)
    if search:
        hits = [s for s in store.search(search) if flt.matches(s)]
        begin = (page - 1) * page_size
        return SubmissionPage(items=hits[begin:begin + page_size], total=len(hits), page=page, page_size=page_size)
    items, total = store.list(flt, page=page, page_size=page_size)
    return SubmissionPage(items=items, total=total, page=page, page_size=page_size)


@admin.get("/submissions/{submission_id}")
def admin_get_submission(submission_id: str, request: Request):
    sub = _services(request).store.get(submission_id)
    if sub is None:
        raise HTTPException(404, "submission not found")
    return sub


@admin.post("/cleanup")
async def admin_cleanup(request: Request, days: float | None = Query(None, ge=0)):
    svc = _services(request)
    removed = await svc.store.cleanup(days if days is not None else svc.config.retention_days)
    return {"removed": removed, "remaining": len(svc.store)}


@admin.get("/export")
def admin_export(
    request: Request,
    form_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    validated_only: bool = False,
):
    flt = SubmissionFilter(form_id=form_id, start=start, end=end, validated_only=validated_only)
    items = _services(request).store.matching(flt)
    return ExportDocument(total_submissions=len(items), filters=flt, submissions=items)


def create_app(config: Settings | None = None, *, services: AppServices | None = None) -> FastAPI:
    svc = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if svc.writer is not None:
            svc.writer.start()
        if svc.persistence is not None:
            restored = await asyncio.to_thread(svc.persistence.load_all)
            await svc.store.load(restored)
        if svc.config.verify_signatures:
            try:
                await svc.key_cache.await_refresh()
            except KeyFetchError as e:
                logger.warning("Signer keys unavailable at startup: %s", e)
        try:
            yield
        finally:
            if svc.writer is not None:
                await svc.writer.stop()
            await svc.key_cache.close()

    app = FastAPI(title="AMP Form Webhook", lifespan=lifespan)
    app.state.services = svc

    @app.get("/")
    def index():
        return {
            "name": "AMP Webhook Server",
            "status": "running",
            "endpoints": {"webhook": "POST /webhook", "health": "GET /health", "stats": "GET /stats"},
        }

    @app.get("/health")
    @app.get("/healthz")  # alias for k8s style probes
    def health(request: Request):
        s = _services(request)
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        keys = s.key_cache.status()
        degraded = s.config.verify_signatures and keys["keys_loaded"] == 0
        return {
            "ok": True,
            "status": "degraded" if degraded else "healthy",
            "uptime_seconds": round(time.time() - s.started_at, 3),
            "keys": keys,
            "submissions": len(s.store),
            "submissions_today": s.store.count_since(today),
            "persistence_errors": len(s.writer.errors) if s.writer is not None else 0,
        }

    @app.get("/stats")
    def stats(request: Request):
        store = _services(request).store
        return {"total_submissions": len(store), "evicted_total": store.evicted_total}

    @app.post("/webhook")
    async def webhook(request: Request):
        s = _services(request)
        body = await request.body()  # raw bytes; the signature covers them verbatim
        inbound = InboundSubmission(
            method=request.method,
            headers={k.lower(): v for k, v in request.headers.items()},
            query=dict(request.query_params),
            body=body,
            client_address=request.client.host if request.client else None,
            form_id=request.query_params.get("formId"),
        )
        decision = await s.pipeline.ingest(inbound)
        status = 200 if decision.accepted else STATUS_FOR_KIND.get(decision.reason, 400)
        payload = {"success": decision.accepted, **decision.model_dump(mode="json", exclude_none=True)}
        return JSONResponse(payload, status_code=status, headers=_amp_response_headers(request, s.config))

    if svc.config.admin_enabled:
        app.include_router(admin)
    return app


app = create_app()
