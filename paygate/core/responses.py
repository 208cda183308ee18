"""
Uniform response envelope
"""

from typing import Any
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


class ResponseModel(BaseModel):
    """Envelope shared by every JSON response"""

    code: int = Field(..., description="Business code, 0 means success")
    msg: str = Field(..., description="Message")
    data: Any | None = Field(None, description="Payload")


def success_response(
    data: Any = None,
    msg: str = "success",
    status_code: int = 200
) -> JSONResponse:
    """
    Success response

    Args:
        data: payload
        msg: message
        status_code: HTTP status, 200 by default
    """
    response = ResponseModel(code=0, msg=msg, data=data)
    return JSONResponse(
        content=jsonable_encoder(response.model_dump()),
        status_code=status_code
    )


def error_response(
    msg: str,
    code: int = 1000,
    data: Any = None,
    status_code: int = 500
) -> JSONResponse:
    """
    Error response

    Args:
        msg: error message
        code: business error code
        data: extra data
        status_code: HTTP status, 500 by default
    """
    response = ResponseModel(code=code, msg=msg, data=data)
    return JSONResponse(
        content=jsonable_encoder(response.model_dump()),
        status_code=status_code
    )


def bad_request_response(
    msg: str = "Bad request",
    code: int = 4000,
    data: Any = None
) -> JSONResponse:
    """400 Bad Request"""
    return error_response(msg=msg, code=code, data=data, status_code=400)


def validation_error_response(
    msg: str = "Validation failed",
    code: int = 4220,
    data: Any = None
) -> JSONResponse:
    """422 Unprocessable Entity"""
    return error_response(msg=msg, code=code, data=data, status_code=422)


def internal_server_response(
    msg: str = "Internal server error",
    code: int = 5000,
    data: Any = None
) -> JSONResponse:
    """500 Internal Server Error"""
    return error_response(msg=msg, code=code, data=data, status_code=500)
