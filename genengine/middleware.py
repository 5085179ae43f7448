from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
import logging
import traceback

from genengine.errors import EngineError

logger = logging.getLogger(__name__)


def add_error_handling_middleware(app: FastAPI):
    """Render engine, HTTP and unexpected errors in one envelope"""

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        """Handle typed engine errors"""
        if exc.status_code >= 500 and not exc.retryable:
            logger.error("Engine error %s on %s: %s", exc.code, request.url.path, exc.message)
        else:
            logger.warning("Engine error %s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with proper error format"""
        logger.error("HTTP error %s: %s", exc.status_code, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.detail,
                "hint": "Check the request parameters and try again",
                "retryable": exc.status_code >= 500
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error("Unhandled exception: %s", exc)
        logger.error("Traceback: %s", traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "hint": "Please try again later or contact support",
                "retryable": True
            }
        )
