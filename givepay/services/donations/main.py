"""Donations service API + lifecycle.

Receives processor webhooks, reconciles checkout completions into donor,
payment and trail rows, and exposes small donor/payment read endpoints.
"""

import json
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from givepay.common.config import CommonSettings, settings
from givepay.common.db import Base, ConnectionGate, build_engine, build_session_factory, ping
from givepay.common.errors import (
    UNIQUE,
    IntegrityViolation,
    TransientStoreError,
    ValidationError,
)
from givepay.common.logging import configure_logging, logger, trace_id_ctx
from givepay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    webhook_notifications_total,
)
from givepay.common.startup import log_startup_config
from givepay.common.tracing import instrument_app, setup_tracing
from givepay.services.donations.auth import verified_webhook_body
from givepay.services.donations.schemas import (
    CHECKOUT_COMPLETED,
    DonorCreateRequest,
    DonorResponse,
    PaymentResponse,
    TrailEntryResponse,
    WebhookAck,
    parse_checkout_completed,
    parse_envelope,
)
from givepay.services.donations.service import DonorDirectory, ReconciliationCoordinator, load_payment


def create_app(config: CommonSettings = settings, engine=None, gate: ConnectionGate | None = None) -> FastAPI:
    """Wire engine, pool gate, and services into a FastAPI app."""

    engine = engine if engine is not None else build_engine(config)
    session_factory = build_session_factory(engine)
    gate = gate if gate is not None else ConnectionGate.from_settings(config)
    coordinator = ReconciliationCoordinator(
        session_factory,
        gate=gate,
        default_currency=config.default_currency,
        service_name=config.service_name,
    )
    donors = DonorDirectory(session_factory, service_name=config.service_name)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Optionally create tables for local runs; dispose the pool on shutdown."""

        if config.auto_create_schema:
            Base.metadata.create_all(engine)
        yield
        engine.dispose()

    app = FastAPI(title="GivePay Donations Service", lifespan=lifespan)
    app.state.settings = config
    app.state.engine = engine
    app.state.coordinator = coordinator
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=config.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=config.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.post("/webhooks/stripe", response_model=WebhookAck)
    def stripe_webhook(
        body: bytes = Depends(verified_webhook_body),
        x_trace_id: str | None = Header(default=None),
    ):
        """Acknowledge a processor notification.

        200 tells the processor to stop redelivering (processed, duplicate, or
        not a type we reconcile), 400 means the payload can never succeed, and
        5xx asks for redelivery.
        """

        trace_id_ctx.set(x_trace_id or str(uuid4()))
        try:
            payload = json.loads(body)
        except ValueError as exc:
            webhook_notifications_total.labels(service=config.service_name, outcome="invalid").inc()
            raise HTTPException(status_code=400, detail="body is not valid JSON") from exc

        try:
            envelope = parse_envelope(payload)
            if envelope.type != CHECKOUT_COMPLETED:
                logger.info("webhook skipped event_id=%s type=%s", envelope.id, envelope.type)
                webhook_notifications_total.labels(service=config.service_name, outcome="skipped").inc()
                return WebhookAck(state="SKIPPED")
            result = coordinator.process(parse_checkout_completed(envelope, payload))
        except ValidationError as exc:
            webhook_notifications_total.labels(service=config.service_name, outcome="invalid").inc()
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TransientStoreError as exc:
            webhook_notifications_total.labels(service=config.service_name, outcome="retry").inc()
            raise HTTPException(status_code=503, detail="temporarily unavailable") from exc
        except IntegrityViolation as exc:
            webhook_notifications_total.labels(service=config.service_name, outcome="error").inc()
            raise HTTPException(status_code=500, detail="reconciliation failed") from exc

        webhook_notifications_total.labels(service=config.service_name, outcome=result.state.value.lower()).inc()
        return WebhookAck(state=result.state.value)

    @app.get("/donors", response_model=list[DonorResponse])
    def list_donors(limit: int = 5):
        """Most recently created donors, newest first."""

        limit = max(1, min(limit, 100))
        return [DonorResponse.model_validate(d) for d in donors.list_recent(limit)]

    @app.post("/donors", response_model=DonorResponse, status_code=status.HTTP_201_CREATED)
    def create_donor(req: DonorCreateRequest):
        try:
            donor = donors.create(req)
        except IntegrityViolation as exc:
            if exc.kind == UNIQUE:
                raise HTTPException(status_code=409, detail="email already registered") from exc
            raise
        return DonorResponse.model_validate(donor)

    @app.get("/payments/{payment_id}", response_model=PaymentResponse)
    def get_payment(payment_id: str):
        """Fetch one payment with its transaction trail."""

        loaded = load_payment(session_factory, payment_id)
        if loaded is None:
            raise HTTPException(status_code=404, detail="payment not found")
        payment, entries = loaded
        response = PaymentResponse.model_validate(payment)
        response.trail = [TrailEntryResponse.model_validate(e) for e in entries]
        return response

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe; checks the database round trip."""

        try:
            ping(engine)
        except Exception as exc:
            logger.warning("health check failed error=%s", exc)
            return JSONResponse(status_code=503, content={"ok": False, "db": "down"})
        return {"ok": True, "db": "up"}

    return app


configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "DATABASE_URL", "DB_POOL_SIZE", "DB_QUEUE_LIMIT", "STRIPE_WEBHOOK_SECRET"],
)
app = create_app()
