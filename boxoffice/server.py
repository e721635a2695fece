from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from jinja2 import Environment, PackageLoader, select_autoescape
from starlette.status import HTTP_201_CREATED, HTTP_303_SEE_OTHER

from .config import Settings, check_settings
from .errors import CorrelationError, OrderError
from .helpers import format_pounds, now_ts, to_iso
from .infra import timings
from .infra.timings import timeit
from .lifecycle import OrderLifecycle
from .logs import configure_logging
from .mockpay import MockPay, PaymentAdapter
from .model.order import Customer, ProductType, Shipping
from .model.orderstore import OrderStore, new_store
from .notifier import ConsoleMailer, Mailer, Notifier, SmtpMailer

logger = structlog.get_logger(__name__)

templates = Jinja2Templates(env=Environment(
    loader=PackageLoader("boxoffice", "templates"),
    autoescape=select_autoescape(["html"]),
))

MOCK_OUTCOMES = {"succeeded", "failed", "canceled"}


# ----------------------------
# Adapter factories
# ----------------------------
def new_gateway(settings: Settings) -> PaymentAdapter:
    if settings.payment_provider == "stripe":
        from .stripepay import StripePay
        return StripePay(settings.stripe_secret_key or "",
                         settings.webhook_secret or "")
    # the mock checkout page is served by this app, next to the webhook
    url = httpx.URL(settings.mock_webhook_url)
    base_url = f"{url.scheme}://{url.netloc.decode('ascii')}"
    return MockPay(settings.webhook_secret or "", base_url=base_url)


def new_mailer(settings: Settings) -> Mailer:
    if settings.mail_backend == "smtp":
        return SmtpMailer(
            settings.smtp_host,
            settings.smtp_port,
            settings.email_user or "",
            settings.email_password or "",
        )
    return ConsoleMailer()


def session_view(session: dict) -> dict:
    return {
        "sessionId": session["session_id"],
        "status": session["status"],
        "amountTotal": session["amount_total"],
        "customerEmail": session.get("customer_email"),
        "orderReference": session.get("metadata", {}).get("order_reference"),
    }


def config_report(settings: Settings) -> dict:
    """Which variables are set; never their values."""
    def present(name: str) -> bool:
        return name in settings.provided

    return {
        "environment": settings.environment,
        "payment_provider": settings.payment_provider,
        "store_backend": settings.store_backend,
        "mail_backend": settings.mail_backend,
        "stripe_secret_key": present("STRIPE_SECRET_KEY"),
        "webhook_secret": present("WEBHOOK_SECRET")
        or present("STRIPE_WEBHOOK_SECRET"),
        "database_url": present("DATABASE_URL"),
        "google_sheets_id": present("GOOGLE_SHEETS_ID"),
        "google_service_account_email":
            present("GOOGLE_SERVICE_ACCOUNT_EMAIL"),
        "google_service_account_key": present("GOOGLE_SERVICE_ACCOUNT_KEY"),
        "email_user": present("EMAIL_USER"),
        "email_password": present("EMAIL_PASSWORD"),
        "frontend_url": settings.frontend_url,
        "missing": settings.missing(),
    }


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[OrderStore] = None,
    gateway: Optional[PaymentAdapter] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)
    # raises ConfigError in production, so the process never serves
    check_settings(settings)

    store = store or new_store(settings)
    gateway = gateway or new_gateway(settings)
    notifier = Notifier(mailer or new_mailer(settings),
                        sender=settings.mail_from or settings.email_user)
    lifecycle = OrderLifecycle(store, gateway, notifier,
                               frontend_url=settings.public_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )
        await store.connect()
        logger.info(
            "boxoffice_starting",
            environment=settings.environment,
            payment_provider=gateway.name,
            store_backend=store.backend,
            mail_backend=type(notifier.mailer).__name__,
        )
        try:
            yield
        finally:
            await store.close()
            await app.state.http.aclose()
            app.state.http = None
            logger.info("boxoffice_stopped", timings=timings.summary())

    app = FastAPI(
        title="Boxoffice",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.lifecycle = lifecycle

    if settings.frontend_url:
        origins = [settings.public_url]
    else:
        origins = [] if settings.production else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrderError)
    async def _order_error(request: Request, exc: OrderError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, code=exc.code,
            error=exc.message, **exc.context)
        return ORJSONResponse(
            {"detail": exc.message, "code": exc.code},
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        # unparseable JSON, or a body that is not an object
        errors = exc.errors()
        message = errors[0].get("msg") if errors else "invalid request body"
        logger.info("request_failed", path=request.url.path,
                    code="validation_error", error=message)
        return ORJSONResponse(
            {"detail": f"Invalid request body: {message}",
             "code": "validation_error"},
            status_code=400,
        )

    # ----------------------------
    # Orders
    # ----------------------------
    @app.post("/orders", status_code=HTTP_201_CREATED)
    async def create_order(payload: dict):
        product_type = ProductType.parse(payload.get("productType"))
        customer = Customer.from_payload(payload.get("customer"))
        shipping = Shipping.from_payload(payload.get("shipping"))
        result = await lifecycle.initiate(
            product_type, customer, payload.get("quantity", 1), shipping
        )
        return {
            "checkoutUrl": result.checkout_url,
            "sessionId": result.session_id,
            "orderReference": result.order_reference,
        }

    @app.get("/orders/{ref}")
    async def get_order(ref: str):
        order = await lifecycle.get_order(ref)
        return order.to_view()

    @app.patch("/orders/{ref}")
    async def amend_order(ref: str, payload: dict):
        order = await lifecycle.amend_order(ref, payload)
        return order.to_view()

    # ----------------------------
    # Webhook endpoint (shared for Mock/Stripe)
    # ----------------------------
    @app.post("/webhooks/payment")
    async def payment_webhook(request: Request):
        # signatures cover the exact bytes, so no JSON parsing before verify
        payload = await request.body()
        signature = request.headers.get(gateway.signature_header)
        try:
            result = await lifecycle.handle_payment_event(payload, signature)
        except CorrelationError:
            return {"received": True, "outcome": "uncorrelated"}
        return {
            "received": True,
            "outcome": result.outcome.value,
            "orderReference": result.order_reference,
        }

    @app.get("/checkout-sessions/{session_id}")
    async def verify_session(session_id: str):
        return session_view(await lifecycle.verify_session(session_id))

    # ----------------------------
    # Health & diagnostics
    # ----------------------------
    @app.get("/health")
    async def health():
        return {
            "status": "OK",
            "environment": settings.environment,
            "timestamp": to_iso(now_ts()),
        }

    @app.get("/health/store")
    async def health_store():
        # adapters raise StoreError (502) when unreachable
        async with timeit("store.ping"):
            await store.ping()
        return {
            "status": "OK",
            "backend": store.backend,
            "timestamp": to_iso(now_ts()),
        }

    @app.get("/debug/config")
    async def debug_config():
        if settings.production:
            raise HTTPException(403, detail="Not available in production")
        return config_report(settings)

    # ----------------------------
    # MockPay UI (simple page with 3 buttons)
    # ----------------------------
    if isinstance(gateway, MockPay):
        @app.get("/mockpay/{psid}", response_class=HTMLResponse)
        async def mockpay_screen(request: Request, psid: str):
            ps = gateway.sessions.get(psid)
            if ps is None:
                raise HTTPException(404, "payment session not found")
            return templates.TemplateResponse(request, "mockpay.html", {
                "psid": psid,
                "order_reference": ps["metadata"].get("order_reference", ""),
                "items": ps["line_items"],
                "amount": format_pounds(ps["amount_total"]),
                "status": ps["status"],
                "webhook_url": settings.mock_webhook_url,
            })

        @app.post("/mockpay/{psid}/emit")
        async def mockpay_emit(psid: str, request: Request):
            form = await request.form()
            kind = form.get("t")  # succeeded|failed|canceled
            if kind not in MOCK_OUTCOMES:
                raise HTTPException(400, detail="invalid kind")

            ps = gateway.sessions.get(psid)
            if ps is None:
                raise HTTPException(404, "payment session not found")

            payload = gateway.build_event(psid, kind)
            client_http: httpx.AsyncClient = request.app.state.http
            try:
                await client_http.post(
                    settings.mock_webhook_url,
                    content=payload,
                    headers={
                        gateway.signature_header: gateway.sign(payload),
                        "content-type": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                # the page can be submitted again
                logger.warning("mock_webhook_delivery_failed",
                               session_id=psid, error=str(e))

            if kind == "succeeded":
                url = ps["success_url"]
            else:
                url = ps["cancel_url"]
            return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    return app


app = create_app()
