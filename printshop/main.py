from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import sessionmaker

from printshop.config import settings
from printshop.db import SessionLocal, get_db
from printshop.errors import WorkflowError, http_status_for
from printshop.logging_config import RequestLoggingMiddleware, get_logger, setup_logging
from printshop.routers import cashier, intake, operator, sync
from printshop.security.headers import install_security_headers
from printshop.security.identity import install_identity_middleware
from printshop.services.change_feed import ChangeFeed
from printshop.services.payment_gateway import PaymentGateway
from printshop.services.provider_factory import get_change_feed, get_payment_gateway

logger = get_logger(__name__)


def create_app(
    *,
    session_factory: sessionmaker | None = None,
    change_feed: ChangeFeed | None = None,
    payment_gateway: PaymentGateway | None = None,
) -> FastAPI:
    session_factory = session_factory or SessionLocal
    change_feed = change_feed or get_change_feed()
    change_feed.bind(session_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        change_feed.start()
        logger.info('Workflow service started', extra={'extra_fields': {'feed': type(change_feed).__name__}})
        try:
            yield
        finally:
            change_feed.close()

    app = FastAPI(title='Print Shop Workflow', lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.change_feed = change_feed

    if session_factory is not SessionLocal:

        def _override_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override_db
    if payment_gateway is not None:
        app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        status_code = http_status_for(exc)
        if status_code >= 500:
            logger.error(
                'Workflow failed',
                extra={'extra_fields': {'error': exc.code, 'path': request.url.path, 'detail': exc.detail}},
            )
        body = {'error': exc.code, 'category': exc.category, 'detail': exc.detail}
        reason = getattr(exc, 'reason', None)
        if reason and reason != exc.detail:
            body['reason'] = reason
        return JSONResponse(status_code=status_code, content=body)

    install_security_headers(app)
    install_identity_middleware(app, session_factory)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(intake.router)
    app.include_router(cashier.router)
    app.include_router(operator.router)
    app.include_router(sync.router)

    @app.get('/health')
    def health() -> dict:
        return {'status': 'ok', 'service': settings.service_name}

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /\n'

    return app


setup_logging(settings.service_name, settings.log_level)
app = create_app()
