from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import conf
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from routes.base import router
from utils import auth, log, response

from clients.store import DocumentStore, MemoryStore
from clients.stripe import PaymentGatewayError, StripeClient
from models.entities.documents.credits import CarbonCredit
from models.entities.documents.processed_events import ProcessedEvent
from models.entities.documents.transactions import Transaction
from models.entities.documents.users import User
from models.errors import MarketplaceError

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)

DOCUMENT_MODELS = (CarbonCredit, Transaction, User, ProcessedEvent)


def build_store() -> DocumentStore:
    if conf.get_store_backend() == "memory":
        logger.warning("Using the in-memory store: data is lost on restart")
        return MemoryStore()
    from clients.couchbase import CouchbaseStore

    return CouchbaseStore(conf.get_couchbase_config())


def build_gateway() -> StripeClient:
    stripe_conf = conf.get_stripe_conf()
    return StripeClient(stripe_conf.secret_key, stripe_conf.webhook_secret)


def _request_validation_errors(exc: RequestValidationError) -> list:
    errors = []
    for err in exc.errors():
        location = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"field": ".".join(location), "message": err.get("msg")})
    return errors


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return response.error(exc.message, exc.status_code, exc.errors)

    @app.exception_handler(PaymentGatewayError)
    async def gateway_error_handler(request: Request, exc: PaymentGatewayError):
        logger.warning(f"{request.method} {request.url.path} gateway error: {exc.message}")
        return response.error(exc.message, exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return response.error(str(exc.detail), exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return response.error("Validation failed", 400, _request_validation_errors(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return response.error("Internal Server Error", 500)


def create_app(
    store: Optional[DocumentStore] = None,
    gateway: Optional[StripeClient] = None,
    auth_client: Optional[auth.AuthClient] = None,
    client_url: Optional[str] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = app.state.store
        logger.info(f"Connecting to {type(store).__name__}...")
        await store.connect()
        for model in DOCUMENT_MODELS:
            await store.ensure_indexes(model.collection(), model.indexes())
        logger.info("Document store ready.")

        if run_scheduler:
            from jobs.scheduler import init_scheduler, shutdown_scheduler

            init_scheduler(store)

        yield

        if run_scheduler:
            shutdown_scheduler()
        await store.close()

    app = FastAPI(
        title="Carbonease API",
        version="0.1.0",
        docs_url="/docs",
        lifespan=lifespan,
        debug=conf.get_http_expose_errors(),
    )
    app.state.store = store or build_store()
    app.state.gateway = gateway or build_gateway()
    app.state.auth_client = auth_client or auth.AuthClient(conf.get_auth_config())
    app.state.client_url = client_url or conf.get_client_url()

    app.include_router(router)
    add_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def route_health():
        return response.success({"status": "ok"}, "Carbonease API is running")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app.state.client_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


if not conf.validate():
    raise ValueError("Invalid configuration.")

app = create_app()

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
