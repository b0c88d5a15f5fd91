# FILE: twinanchor/service_http.py
from __future__ import annotations

import hmac
import os
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.cors import CORSMiddleware

from .anchoring import AnchoringService
from .canonical import CanonicalizationError
from .config import Settings, make_reloadable_settings
from .entities import UnknownEntityError
from .logging import RequestLogMiddleware, get_logger, log_security_event
from .private_ledger import PrivateLedgerError, PrivateLedgerUnavailable
from .public_ledger import PublicLedgerError
from .schemas import (
    AnchorItemView,
    AnchorJobView,
    AnchorRequest,
    AnchorResponse,
    LookupMatch,
    QueueStatusView,
    RecoveredVersion,
    RecoverResponse,
    VerificationView,
    VerifyRequest,
)

API_VERSION = "0.3.0"

_REQ_COUNTER = Counter(
    "twinanchor_http_requests_total",
    "HTTP requests",
    ["route", "status"],
)
_REQ_LATENCY = Histogram(
    "twinanchor_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
)


# ---------------------------------------------------------------------------
# Auth: optional static bearer token
# ---------------------------------------------------------------------------


class ServiceTokenAuth:
    """
    Static bearer-token guard for the API.

    The expected token is read from the environment on each request; when
    the variable is unset or empty the guard lets every request through.
    Tenant identity itself comes from the X-Org-Id / X-User-Id headers set
    by the upstream gateway.
    """

    def __init__(self, token_provider: Callable[[], Optional[str]]) -> None:
        self._token = token_provider

    def __call__(self, authorization: Optional[str] = Header(default=None)) -> None:
        target = self._token()
        if not target:
            return
        scheme, _, presented = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not presented:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="bearer token required",
            )
        if len(presented) != len(target) or not hmac.compare_digest(presented, target):
            log_security_event(get_logger("twinanchor.http"), threat_label="bad_service_token")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="forbidden",
            )


def _require_org(x_org_id: Optional[str] = Header(default=None, alias="X-Org-Id")) -> str:
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Org-Id header required",
        )
    return x_org_id


def _optional_org(x_org_id: Optional[str] = Header(default=None, alias="X-Org-Id")) -> Optional[str]:
    return x_org_id or None


def _optional_user(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Optional[str]:
    return x_user_id or None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    service: Optional[AnchoringService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the anchoring HTTP surface.

      - /healthz, /readyz, /metrics
      - /v1/anchoring/*: chain health, queue status, manual anchoring,
        anchor status and job history (tenant-scoped)
      - /v1/explorer/*: verification, private-ledger recovery and lookup
    """
    settings = settings or make_reloadable_settings().get()
    service = service or AnchoringService.from_settings(settings)
    logger = get_logger("twinanchor.http")

    enable_docs = bool(settings.debug)
    app = FastAPI(
        title=settings.app_name,
        version=API_VERSION,
        openapi_url="/openapi.json" if enable_docs else None,
        docs_url="/docs" if enable_docs else None,
        redoc_url=None,
    )
    app.state.service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-Twinanchor-Config-Hash"],
    )
    app.add_middleware(RequestLogMiddleware)

    config_hash = settings.config_hash()

    @app.middleware("http")
    async def metrics_and_version(request: Request, call_next):
        t0 = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or "unmatched"
        _REQ_LATENCY.labels(route_path).observe(max(0.0, time.perf_counter() - t0))
        _REQ_COUNTER.labels(route_path, str(response.status_code)).inc()
        response.headers["X-Twinanchor-Config-Hash"] = config_hash
        return response

    # ---- error mapping ----------------------------------------------------

    @app.exception_handler(UnknownEntityError)
    async def _unknown_entity(request: Request, exc: UnknownEntityError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(CanonicalizationError)
    async def _canonicalization(request: Request, exc: CanonicalizationError):
        logger.error("record cannot be canonicalized: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": f"record cannot be canonicalized: {exc}"},
        )

    @app.exception_handler(PrivateLedgerError)
    async def _private_ledger(request: Request, exc: PrivateLedgerError):
        logger.warning("private ledger error: %s", exc)
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if isinstance(exc, PrivateLedgerUnavailable)
            else status.HTTP_502_BAD_GATEWAY
        )
        return JSONResponse(status_code=code, content={"detail": "private ledger error"})

    @app.exception_handler(PublicLedgerError)
    async def _public_ledger(request: Request, exc: PublicLedgerError):
        logger.warning("public ledger error: %s", exc)
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": "public ledger error"})

    token_guard = ServiceTokenAuth(lambda: os.environ.get(settings.service_token_env))

    # -----------------------------------------------------------------------
    # Health / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": settings.version,
            "http_version": API_VERSION,
            "config_hash": config_hash,
        }

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {
            "ready": True,
            "queue": service.get_queue_status().as_dict(),
        }

    if settings.prom_http_enable:

        @app.get("/metrics")
        def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Anchoring
    # -----------------------------------------------------------------------

    @app.get("/v1/anchoring/health")
    def anchoring_health(_auth: None = Depends(token_guard)) -> Dict[str, Any]:
        return service.chains_health_check()

    @app.get("/v1/anchoring/queue", response_model=QueueStatusView)
    def anchoring_queue(_auth: None = Depends(token_guard)) -> QueueStatusView:
        return QueueStatusView(**service.get_queue_status().as_dict())

    @app.post("/v1/anchoring/anchor", response_model=AnchorResponse)
    def anchoring_anchor(
        req: AnchorRequest,
        org_id: str = Depends(_require_org),
        user_id: Optional[str] = Depends(_optional_user),
        _auth: None = Depends(token_guard),
    ) -> AnchorResponse:
        results = service.anchor_entities(org_id, user_id, req.entity_type, req.entity_ids)
        return AnchorResponse(
            entity_type=req.entity_type.strip().lower(),
            results=[AnchorItemView(**r) for r in results],
        )

    @app.get("/v1/anchoring/verify/{tx_ref}")
    def anchoring_status(tx_ref: str, _auth: None = Depends(token_guard)) -> Dict[str, Any]:
        return service.check_anchor_status(tx_ref)

    @app.get("/v1/anchoring/jobs", response_model=List[AnchorJobView])
    def anchoring_jobs(
        limit: int = 50,
        org_id: str = Depends(_require_org),
        _auth: None = Depends(token_guard),
    ) -> List[AnchorJobView]:
        limit = max(1, min(int(limit), 500))
        return [
            AnchorJobView(
                id=j.id,
                org_id=j.org_id,
                entity_type=j.entity_type,
                entity_id=j.entity_id,
                status=j.status,
                payload=j.payload,
                result=j.result,
                error=j.error,
                created_at=j.created_at.isoformat(),
            )
            for j in service.list_jobs(org_id, limit=limit)
        ]

    # -----------------------------------------------------------------------
    # Explorer
    # -----------------------------------------------------------------------

    @app.post("/v1/explorer/verify", response_model=VerificationView)
    def explorer_verify(
        req: VerifyRequest,
        org_id: Optional[str] = Depends(_optional_org),
        _auth: None = Depends(token_guard),
    ) -> VerificationView:
        if not req.has_reference():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="tx_hash or entity_type and entity_id required",
            )
        result = service.verify(
            req.tx_hash,
            entity_type=req.entity_type,
            entity_id=req.entity_id,
            org_id=org_id,
        )
        return VerificationView(**result.as_dict())

    @app.get("/v1/explorer/recover/{entity_type}/{entity_id}", response_model=RecoverResponse)
    def explorer_recover(
        entity_type: str,
        entity_id: str,
        _auth: None = Depends(token_guard),
    ) -> RecoverResponse:
        versions = service.recover(entity_type, entity_id)
        if not versions:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="no private-ledger history for this entity",
            )
        return RecoverResponse(
            entity_type=entity_type.strip().lower(),
            entity_id=entity_id,
            versions=[RecoveredVersion(**v) for v in versions],
        )

    @app.get("/v1/explorer/lookup/{identifier}")
    def explorer_lookup(identifier: str, _auth: None = Depends(token_guard)) -> Dict[str, Any]:
        matches = service.lookup(identifier)
        if not matches:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="no record matches this identifier",
            )
        return {
            "identifier": identifier,
            "matches": [LookupMatch(**m).model_dump() for m in matches],
        }

    return app


__all__ = ["API_VERSION", "ServiceTokenAuth", "create_app"]
