"""
Mindprint HTTP API.

Thin FastAPI layer over the session protocol, issuance, verification and
the advisory analysis client. The app is built by create_app so tests and
embedders can inject settings, a store and an analysis client.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .analysis import AnalysisClient, advisory_http_status
from .certificate import create_certificate_record, finish_session, get_certificate_record
from .classifier import validate_session
from .config import Settings
from .db import Store, open_store
from .errors import (
    AdvisoryError,
    ConfigurationError,
    IntegrityError,
    SequenceError,
    StoreUnavailableError,
    ValidationError,
)
from .log_backends import LogMirror, get_log_mirror
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    AnalyzeRequest,
    CertificateRequest,
    FinishSessionRequest,
    IngestBatchRequest,
    ValidateSessionRequest,
)
from .rate_limit import EndpointLimits
from .security import extract_client_id
from .session import ingest_telemetry, init_telemetry_session
from .verifier import export_certificate_log, verify_certificate

logger = logging.getLogger(__name__)

UNAUTHENTICATED_CODES = (
    IntegrityError.MISSING_CREDENTIALS,
    IntegrityError.INVALID_TOKEN,
    IntegrityError.TOKEN_EXPIRED,
)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    analysis_client: Optional[AnalysisClient] = None,
    mirror: Optional[LogMirror] = None
) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(title="Mindprint")
    app.state.settings = settings
    app.state.store = store
    app.state.mirror = mirror if mirror is not None else get_log_mirror(settings)
    app.state.analysis = analysis_client or AnalysisClient(settings)
    app.state.limits = EndpointLimits(settings)

    @app.on_event("startup")
    def _startup():
        if app.state.store is None:
            app.state.store = open_store(settings.database_path)

    # ------------------------------------------------------------
    # Middleware and error mapping
    # ------------------------------------------------------------

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = set_request_id(request.headers.get("x-request-id") or None)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "VALIDATION_ERROR", "field": exc.field, "message": exc.message},
        )

    @app.exception_handler(SequenceError)
    async def _sequence_error(request: Request, exc: SequenceError):
        return JSONResponse(
            status_code=409,
            content={
                "error": "SEQUENCE_REJECTED",
                "message": exc.message,
                "lastSequence": exc.last_sequence,
            },
        )

    @app.exception_handler(IntegrityError)
    async def _integrity_error(request: Request, exc: IntegrityError):
        status = 401 if exc.code in UNAUTHENTICATED_CODES else 403
        return JSONResponse(status_code=status, content={"error": exc.code, "message": exc.message})

    @app.exception_handler(StoreUnavailableError)
    async def _store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("Store unavailable: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"error": "STORE_UNAVAILABLE", "message": "Durable storage is unavailable."},
        )

    @app.exception_handler(AdvisoryError)
    async def _advisory_error(request: Request, exc: AdvisoryError):
        status, message = advisory_http_status(exc)
        return JSONResponse(status_code=status, content={"error": message})

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(request: Request, exc: ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return JSONResponse(status_code=500, content={"error": "CONFIGURATION_ERROR"})

    def _limit(request: Request, group: str) -> None:
        client = request.client.host if request.client else None
        client_id = extract_client_id(dict(request.headers), client)
        result = app.state.limits.check(group, client_id)
        if not result.allowed:
            audit_log.rate_limit_exceeded(client_id, request.url.path)
            raise HTTPException(
                429,
                "RATE_LIMIT",
                headers={"Retry-After": str(int(result.retry_after or 0) + 1)},
            )

    # ------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------

    @app.get("/health")
    def health():
        store = app.state.store
        return {
            "status": "ok",
            "env": settings.env,
            "store": "configured" if store is not None else "unconfigured",
            "devSecret": settings.uses_dev_secret,
        }

    @app.post("/telemetry/sessions")
    def create_session(request: Request):
        _limit(request, "init")
        return init_telemetry_session(app.state.store, settings).to_dict()

    @app.post("/telemetry/sessions/{session_id}/batches")
    def ingest_batch(session_id: str, req: IngestBatchRequest, request: Request):
        _limit(request, "ingest")
        result = ingest_telemetry(
            app.state.store,
            settings,
            req.events,
            session_id,
            req.session_token,
            req.batch_sequence,
        )
        return result.to_dict()

    @app.post("/telemetry/sessions/{session_id}/finish")
    def finish(session_id: str, req: FinishSessionRequest, request: Request):
        _limit(request, "issue")
        payload = finish_session(app.state.store, settings, session_id, req.text, mirror=app.state.mirror)
        return payload.to_dict()

    @app.post("/telemetry/validate")
    def validate(req: ValidateSessionRequest):
        return validate_session(req.events, req.content_length).to_dict()

    @app.post("/certificates")
    def issue_certificate(req: CertificateRequest, request: Request):
        _limit(request, "issue")
        payload = create_certificate_record(app.state.store, settings, req.to_input(), mirror=app.state.mirror)
        return payload.to_dict()

    @app.get("/certificates/{certificate_id}")
    def get_certificate(certificate_id: str):
        payload = get_certificate_record(app.state.store, certificate_id)
        if payload is None:
            raise HTTPException(404, "NOT_FOUND")
        return payload.to_dict()

    @app.get("/certificates/{certificate_id}/verify")
    def verify(certificate_id: str):
        if get_certificate_record(app.state.store, certificate_id) is None:
            raise HTTPException(404, "NOT_FOUND")
        return verify_certificate(app.state.store, settings, certificate_id).to_dict()

    @app.get("/certificate_log")
    def certificate_log():
        return export_certificate_log(app.state.store)

    @app.post("/analyze")
    def analyze(req: AnalyzeRequest, request: Request):
        _limit(request, "analyze")
        return app.state.analysis.analyze(req.log, req.session_id, app.state.store)

    return app


def build_default_app() -> FastAPI:
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    return create_app(settings)


app = build_default_app()
