"""FastAPI glue shared by the service entry points."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .errors import DomainError

logger = logging.getLogger(__name__)


async def domain_error_handler(request: Request, exc: DomainError) -> PlainTextResponse:
    logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc)
    return PlainTextResponse(str(exc), status_code=exc.status_code)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
