"""FastAPI application exposing portal access and duplicate reconciliation."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .config import cors_origins_from_env, parse_origins
from .errors import (
    AuthenticationError,
    ExtractionError,
    FetchError,
    ReconciliationError,
    ValidationError,
)
from .logging import get_logger
from .models import Credential
from .runtime import Runtime, build_runtime
from .service import build_request

logger = get_logger(__name__)


class AuthenticateRequest(BaseModel):
    credential_url: Optional[str] = Field(None, alias="credentialUrl")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class FetchDocumentRequest(BaseModel):
    track_id: Optional[str] = Field(None, alias="trackId")
    session_id: Optional[str] = Field(None, alias="sessionId")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class ProcessRequest(BaseModel):
    credential_url: Optional[str] = Field(None, alias="credentialUrl")
    track_id: Optional[str] = Field(None, alias="trackId")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class ReconcileRequest(BaseModel):
    owner: Optional[Union[int, str]] = Field(None, alias="ownerId")
    date_from: Optional[str] = Field(None, alias="fromDate")
    date_to: Optional[str] = Field(None, alias="toDate")
    credential_url: Optional[str] = Field(None, alias="credentialUrl")
    limit: Optional[int] = None

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.to_dict())
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=exc.to_dict())
    if isinstance(exc, FetchError):
        return HTTPException(status_code=502, detail=exc.to_dict())
    if isinstance(exc, ExtractionError):
        return HTTPException(status_code=422, detail=exc.to_dict())
    if isinstance(exc, ReconciliationError):
        return HTTPException(status_code=500, detail=exc.to_dict())
    logger.exception("request_failed", error=str(exc))
    return HTTPException(
        status_code=500,
        detail={"code": "INTERNAL_ERROR", "message": str(exc)},
    )


def get_runtime(request: Request) -> Runtime:
    runtime: Runtime = request.app.state.runtime
    return runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(api: FastAPI):
        if getattr(api.state, "runtime", None) is None:
            api.state.runtime = build_runtime()
        try:
            yield
        finally:
            api.state.runtime.close()

    api = FastAPI(title="DIAN Duplicate Reconciliation", version=__version__, lifespan=lifespan)
    if runtime is not None:
        api.state.runtime = runtime

    origins = parse_origins(runtime.config.cors_allowed_origins) if runtime else cors_origins_from_env()
    api.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @api.get("/health")
    def health() -> dict:
        return {"status": "healthy"}

    @api.get("/info")
    def info(runtime: Runtime = Depends(get_runtime)) -> dict:
        return {
            "service": "dian-dedup",
            "version": __version__,
            "portal": runtime.service.portal_host,
            "tolerance": str(runtime.config.amount_tolerance),
            "endpoints": {
                "POST /authenticate": {"credentialUrl": "portal URL carrying pk and token"},
                "POST /fetch-document": {"trackId": "CUFE", "sessionId": "from /authenticate"},
                "POST /process": {"credentialUrl": "portal URL", "trackId": "CUFE"},
                "POST /reconcile": {
                    "ownerId": "numeric identification number",
                    "fromDate": "YYYY-MM-DD",
                    "toDate": "YYYY-MM-DD",
                    "credentialUrl": "portal URL",
                    "limit": "optional, non-representative test mode",
                },
            },
        }

    @api.post("/authenticate")
    def authenticate(req: AuthenticateRequest, runtime: Runtime = Depends(get_runtime)) -> dict:
        try:
            credential = Credential.from_url(req.credential_url)
            result = runtime.service.authenticate(credential)
        except Exception as exc:
            raise _to_http_exception(exc)
        return {
            "success": result["success"],
            "sessionId": result["session_id"],
            "message": result["message"],
        }

    @api.post("/fetch-document")
    def fetch_document(req: FetchDocumentRequest, runtime: Runtime = Depends(get_runtime)) -> dict:
        try:
            return runtime.service.fetch_document(req.track_id, req.session_id)
        except Exception as exc:
            raise _to_http_exception(exc)

    @api.post("/process")
    def process(req: ProcessRequest, runtime: Runtime = Depends(get_runtime)) -> dict:
        """Authenticate and download one bundle in a single call."""
        try:
            credential = Credential.from_url(req.credential_url)
            return runtime.service.process(credential, req.track_id)
        except Exception as exc:
            raise _to_http_exception(exc)

    @api.post("/reconcile")
    def reconcile(req: ReconcileRequest, runtime: Runtime = Depends(get_runtime)) -> dict:
        try:
            request = build_request(req.owner, req.date_from, req.date_to, req.credential_url, req.limit)
            report = runtime.service.reconcile(request)
        except Exception as exc:
            raise _to_http_exception(exc)
        return report.to_dict()

    return api


app = create_app()
