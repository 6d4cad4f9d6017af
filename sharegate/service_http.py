# FILE: sharegate/service_http.py
from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from .claim import ValidationError, VerificationIncomplete
from .config import Settings, get_settings
from .exporter import VerifyMetrics
from .ledger import JsonRpcLogFetcher, LogFetcher
from .logging import RequestLogMiddleware, get_logger, log_verdict
from .verify import verify

# Routes reported as-is in metrics; anything else is folded into "other".
_KNOWN_ROUTES = frozenset({"/api/receive", "/healthz", "/readyz", "/version", "/metrics"})


def _route_label(path: str) -> str:
    return path if path in _KNOWN_ROUTES else "other"


def _reject_constant(name: str) -> Any:
    # NaN, Infinity and -Infinity are not JSON.
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _error_response(status_code: int, errors: list) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errors": errors})


def create_app(
    settings: Optional[Settings] = None,
    *,
    fetcher: Optional[LogFetcher] = None,
) -> FastAPI:
    """
    Build the HTTP surface of the verification service.

    Exposes:
    - POST /api/receive: verify a shared claim;
    - health/readiness/version endpoints and a Prometheus /metrics endpoint.

    `fetcher` overrides the ledger client (tests, custom transports).
    """
    settings = settings or get_settings()

    openapi_url = "/openapi.json" if settings.enable_docs else None
    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        openapi_url=openapi_url,
        docs_url=docs_url,
        redoc_url=redoc_url,
    )

    config_hash = settings.config_hash()
    options = settings.verify_options()
    ledger = fetcher or JsonRpcLogFetcher(timeout_s=settings.ledger_timeout_s)
    metrics = VerifyMetrics(version=settings.version, config_hash=config_hash)
    logger = get_logger("sharegate.http", settings.log_level)

    app.state.settings = settings
    app.state.metrics = metrics

    # Edge middleware: body size guard, metrics, config hash header
    @app.middleware("http")
    async def body_size_and_metrics(request: Request, call_next):
        route = _route_label(request.scope.get("path", ""))
        t0 = time.perf_counter()

        cl = request.headers.get("content-length")
        response: Optional[Response] = None
        if cl is not None:
            try:
                too_large = int(cl) > settings.max_body_bytes
            except ValueError:
                response = JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"detail": "invalid content-length"},
                )
            else:
                if too_large:
                    response = JSONResponse(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        content={"detail": "body too large"},
                    )

        if response is None:
            response = await call_next(request)

        metrics.observe_request(route, response.status_code, time.perf_counter() - t0)
        response.headers["X-Sharegate-Version"] = settings.version
        response.headers["X-Sharegate-Config-Hash"] = config_hash
        return response

    app.add_middleware(RequestLogMiddleware)

    # -----------------------------------------------------------------------
    # Endpoints: health / ready / version / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "config_hash": config_hash,
            "version": settings.version,
        }

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {
            "ready": True,
            "validate_on_chain": settings.validate_on_chain,
            "config_origin": settings.config_origin,
        }

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "version": settings.version,
            "config_hash": config_hash,
            "attestation_event": settings.attestation_event,
            "attestation_hash_field": settings.attestation_hash_field,
        }

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        body, content_type = metrics.render()
        return Response(body, media_type=content_type)

    # -----------------------------------------------------------------------
    # Endpoint: claim verification
    # -----------------------------------------------------------------------

    @app.post("/api/receive")
    async def receive(request: Request) -> JSONResponse:
        try:
            raw = json.loads(await request.body(), parse_constant=_reject_constant)
        except ValueError:
            body_error = ValidationError(
                key="body",
                message="Request body must be a valid JSON object.",
            )
            return _error_response(status.HTTP_400_BAD_REQUEST, [body_error.as_dict()])

        t0 = time.perf_counter()
        try:
            verdict = await verify(raw, options, fetcher=ledger)
        except VerificationIncomplete as exc:
            elapsed = time.perf_counter() - t0
            metrics.record_incomplete(elapsed)
            logger.warning(
                "verify.incomplete",
                extra={"latency_ms": round(elapsed * 1000.0, 3), "reason": str(exc)},
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"error": "verification_incomplete", "detail": str(exc)},
            )

        elapsed = time.perf_counter() - t0
        metrics.record_verdict(verdict, elapsed)
        log_verdict(logger, verdict, latency_ms=elapsed * 1000.0)

        if not verdict.accepted:
            return _error_response(status.HTTP_400_BAD_REQUEST, verdict.errors_as_dicts())
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": True, "token": verdict.token},
        )

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        create_app(_settings),
        host=_settings.host,
        port=_settings.port,
        log_level=_settings.log_level.lower(),
    )
