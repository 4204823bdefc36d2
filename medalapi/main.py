import logging
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from medalapi.config import settings
from medalapi.core.exception_handlers import (
    handle_base_api_exception,
    handle_http_exception,
    handle_service_exception,
    handle_unexpected_error,
    handle_validation_error,
)
from medalapi.core.exceptions import BaseAPIException, ServiceException
from medalapi.core.logging_middleware import LoggingMiddleware
from medalapi.logging_config import setup_logging
from medalapi.routers import draw_router, exchange_router, health_router, medal_router

load_dotenv("medalapi/.env")

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(BaseAPIException, handle_base_api_exception)
    app.add_exception_handler(ServiceException, handle_service_exception)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(health_router.router)
    app.include_router(medal_router.router, prefix=settings.API_V1_STR)
    app.include_router(exchange_router.router, prefix=settings.API_V1_STR)
    app.include_router(draw_router.router, prefix=settings.API_V1_STR)

    logger.info(f"{settings.APP_NAME} started (environment={settings.ENVIRONMENT})")
    return app


app = create_app()

handler = Mangum(app)
