# FILE: sharegate/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Mapping, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("SHAREGATE_LOG_SCHEMA", "sharegate.log.v1")
_LOG_SERVICE = os.environ.get("SHAREGATE_SERVICE", "sharegate")
_LOG_VERSION = os.environ.get("SHAREGATE_VERSION", "dev")
_LOG_ENV = os.environ.get("SHAREGATE_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "SHAREGATE_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(512, int(os.environ.get("SHAREGATE_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

# Stack emission toggle
_INCLUDE_STACK = os.environ.get("SHAREGATE_LOG_INCLUDE_STACK", "1") == "1"

# Claim material that must never reach logs verbatim
_FORBIDDEN_META_KEYS = {
    "signature",
    "packeddata",
    "data",
    "body",
}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# Envelope fields lifted out of context / record extras
_ENVELOPE_FIELDS = (
    "req_id",
    "path",
    "method",
    "status",
    "latency_ms",
    "bytes_in",
    "bytes_out",
    "verdict",
    "stage",
    "error_count",
    "error_keys",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "sharegate_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _apply_trunc(v: Any) -> Any:
    if isinstance(v, str):
        return _truncate(v)
    if isinstance(v, Mapping):
        return {str(kk): _apply_trunc(vv) for kk, vv in v.items()}
    if isinstance(v, (list, tuple)):
        return [_apply_trunc(x) for x in v]
    return v


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect dynamic metadata (record extras) that is not already part of the
    envelope, dropping private attributes and claim material.
    """
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if k.lower() in _FORBIDDEN_META_KEYS:
            continue
        meta[k] = _apply_trunc(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, msg, logger
      - req_id, path, method, status, latency_ms, bytes_in, bytes_out
      - verdict, stage, error_count, error_keys
    Everything else passed via `extra=` lands under "meta".
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # Context picks (prefer record.<attr> -> bound ctx)
        for name in _ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            if v is not None:
                evt[name] = _apply_trunc(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()) | set(_ENVELOPE_FIELDS))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Mapping[str, str]] = None) -> str:
    """
    Get or create a request id and bind it into the logging context.
    """
    rid = None
    if headers:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        for k in ("x-request-id", "x-amzn-trace-id"):
            if lowered.get(k):
                rid = lowered[k]
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_verdict(
    logger: logging.Logger,
    verdict: Any,
    *,
    latency_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log one verification outcome: accepted / rejected, failing stage and the
    keys of the reported errors. Messages and claim material are not logged.
    """
    stage = getattr(verdict, "stage", None)
    errors = getattr(verdict, "errors", ()) or ()
    extra: Dict[str, Any] = {
        "verdict": "accepted" if verdict.accepted else "rejected",
        "stage": getattr(stage, "value", stage),
        "error_count": len(errors),
        "error_keys": sorted({e.key for e in errors}),
    }
    if latency_ms is not None:
        extra["latency_ms"] = round(float(latency_ms), 3)
    logger.log(level, "verify.verdict", extra=extra)


# ---------- ASGI middleware (structured request logs, no bodies) ----------
class RequestLogMiddleware:
    """
    ASGI middleware that binds a request id and emits one JSON `http.finish`
    line per request with method, path, status, latency and byte counts.

    Request and response bodies are never logged. Usage:
        app.add_middleware(RequestLogMiddleware)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "sharegate.http",
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        bind(path=path, method=method)

        t0 = time.perf_counter()
        status_holder = {"code": None}
        bytes_out_holder = {"n": 0}
        bytes_in = 0

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
                raw_headers = list(message.get("headers") or [])
                if not any(k.lower() == b"x-request-id" for k, _ in raw_headers):
                    raw_headers.append((b"x-request-id", rid.encode("latin1")))
                    message = dict(message, headers=raw_headers)
            if message["type"] == "http.response.body":
                bytes_out_holder["n"] += len(message.get("body", b"") or b"")
            await send(message)

        async def _recv_wrapper():
            nonlocal bytes_in
            msg = await receive()
            if msg["type"] == "http.request":
                bytes_in += len(msg.get("body", b"") or b"")
            return msg

        try:
            await self.app(scope, _recv_wrapper, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "path": path,
                    "method": method,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                    "bytes_in": bytes_in,
                    "bytes_out": bytes_out_holder["n"],
                },
            )
            # Clear request-scoped keys to avoid leakage across coroutines
            unbind("req_id", "path", "method")


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "sharegate", level: Optional[str] = None) -> logging.Logger:
    """
    Return a logger, configuring JSON output for root+uvicorn on first call.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=level or os.environ.get("SHAREGATE_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "log_verdict",
    "JSONFormatter",
    "RequestLogMiddleware",
]
