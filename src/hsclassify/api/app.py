from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from hsclassify import __version__
from hsclassify.api.routes_classification import router as classification_router
from hsclassify.classification.errors import (
    AuditIntegrityViolation,
    ClassificationNotFound,
    RuleOrderViolation,
    ValidationError,
)
from hsclassify.classification.service import ClassificationService
from hsclassify.observability import bind_classification_id, log_event, redact_api_key, reset_classification_id

logger = logging.getLogger(__name__)

_CLASSIFICATION_PATH = re.compile(r"^/v1/classifications/([^/]+)")


def _redact_message(msg: str) -> str:
    if msg.lower().startswith("value error, "):
        msg = msg.split(", ", 1)[1]
    lowered = msg.lower()
    if "key" in lowered or "token" in lowered or "secret" in lowered:
        return "Invalid request payload"
    return msg


def _normalize_validation_errors(raw_errors: List[Dict[str, Any]]) -> Dict[str, Any]:
    fields: List[Dict[str, str]] = []
    for err in raw_errors:
        loc = err.get("loc", [])
        loc_parts = [str(part) for part in loc if part != "body"]
        path = ".".join(["request", *loc_parts]) if loc_parts else "request"
        message = _redact_message(err.get("msg", "Invalid request"))
        fields.append({"path": path, "message": message})
    return {"error": "VALIDATION_ERROR", "fields": fields}


def _error(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message, **extra})


def _classification_id_from_path(path: str) -> Optional[str]:
    match = _CLASSIFICATION_PATH.match(path)
    return match.group(1) if match else None


def create_app(service: ClassificationService | None = None) -> FastAPI:
    """Build the API application around *service* (or one configured from env)."""

    app = FastAPI(title="hsclassify API", version=__version__)
    app.state.service = service or ClassificationService.from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(classification_router)

    @app.middleware("http")
    async def attach_classification_id(request: Request, call_next):
        path = str(request.url.path)
        token = bind_classification_id(_classification_id_from_path(path))
        redacted_key = redact_api_key(request.headers.get("X-API-Key"))
        log_event("request.start", path=path, method=request.method, api_key=redacted_key)
        try:
            response = await call_next(request)
            log_event("request.end", path=path, status=response.status_code, api_key=redacted_key)
            return response
        finally:
            reset_classification_id(token)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content=_normalize_validation_errors(exc.errors()))

    @app.exception_handler(PydanticValidationError)
    async def handle_pydantic_validation_error(request: Request, exc: PydanticValidationError):
        return JSONResponse(status_code=422, content=_normalize_validation_errors(exc.errors()))

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        return _error(422, "VALIDATION_ERROR", str(exc))

    @app.exception_handler(ClassificationNotFound)
    async def handle_not_found(request: Request, exc: ClassificationNotFound):
        return _error(404, "NOT_FOUND", str(exc), classification_id=exc.classification_id)

    @app.exception_handler(RuleOrderViolation)
    async def handle_rule_order(request: Request, exc: RuleOrderViolation):
        return _error(409, "RULE_ORDER_VIOLATION", str(exc), attempted=exc.attempted, expected=exc.expected)

    @app.exception_handler(AuditIntegrityViolation)
    async def handle_integrity(request: Request, exc: AuditIntegrityViolation):
        logger.error("Audit integrity failure surfaced to client: %s", exc)
        return _error(
            409,
            "AUDIT_INTEGRITY_VIOLATION",
            str(exc),
            classification_id=exc.classification_id,
            sequence=exc.sequence,
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "status": "ok", "version": __version__}

    return app
