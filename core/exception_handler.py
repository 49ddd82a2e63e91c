import logging

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.exceptions import BaseCustomException

logger = logging.getLogger("evm_indexer")


def _error_response(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    content = {"status": "error", "message": message}
    if code is not None:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handler for HTTP exceptions raised by the status routes.

    Parameters
    ----------
    request : Request
        FastAPI request
    exc : HTTPException
        HTTP exception

    Returns
    -------
    JSONResponse
        Error response
    """
    return _error_response(exc.status_code, exc.detail)


async def starlette_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handler for routing errors (unknown paths, wrong methods)."""
    return _error_response(exc.status_code, exc.detail)


async def custom_exception_handler(request: Request, exc: Exception):
    """
    Handler for indexer exceptions and anything unexpected.

    Indexer exceptions carry their HTTP status and a stable ``code``
    (the exception's default message key). Anything else is logged and
    answered with a generic 500.

    Parameters
    ----------
    request : Request
        FastAPI request
    exc : Exception
        Exception

    Returns
    -------
    JSONResponse
        Error response
    """
    if isinstance(exc, BaseCustomException):
        return _error_response(exc.get_status_code(), exc.message, exc.get_default_message())

    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
    return _error_response(500, "Internal server error")
