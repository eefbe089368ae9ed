"""
Vidya Error Taxonomy.

Services raise these; the API layer renders them as ``{"error", "detail"}``
payloads with a stable code so clients can map them back.

  ValidationError    — missing / invalid input (empty title, self-follow)
  Unauthorized       — actor lacks the role or ownership required
  NotFound           — id missing or already consumed by a concurrent decision
  ConflictIgnored    — duplicate like/view/follow; treated as success
  DependencyFailure  — database, blob store or identity provider unreachable
  BestEffortFailure  — notification delivery failed; logged, never surfaced
"""
from __future__ import annotations

import logging
from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class VidyaError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.code, "detail": self.detail}


class ValidationError(VidyaError):
    code = "validation_error"
    status_code = 422


class Unauthorized(VidyaError):
    code = "unauthorized"
    status_code = 403


class NotFound(VidyaError):
    code = "not_found"
    status_code = 404


class ConflictIgnored(VidyaError):
    """A duplicate write hit a uniqueness constraint; the caller's intent already holds."""
    code = "conflict_ignored"
    status_code = 200


class DependencyFailure(VidyaError):
    code = "dependency_failure"
    status_code = 503


class BestEffortFailure(VidyaError):
    code = "best_effort_failure"
    status_code = 500


ERRORS_BY_CODE: Dict[str, Type[VidyaError]] = {
    cls.code: cls
    for cls in (
        ValidationError, Unauthorized, NotFound,
        ConflictIgnored, DependencyFailure, BestEffortFailure,
    )
}


def error_from_payload(payload: Dict) -> VidyaError:
    """Rebuild a taxonomy error from an API error payload."""
    cls = ERRORS_BY_CODE.get(payload.get("error", ""), VidyaError)
    return cls(payload.get("detail", ""))


async def vidya_error_handler(request: Request, exc: VidyaError) -> JSONResponse:
    if isinstance(exc, DependencyFailure):
        logger.warning(f"Dependency failure on {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(VidyaError, vidya_error_handler)
