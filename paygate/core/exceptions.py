"""
Exception hierarchy
"""

from typing import Any


class BaseAPIException(Exception):
    """Base API exception"""

    def __init__(
        self,
        message: str,
        code: int = 1000,
        status_code: int = 500,
        details: Any = None,
    ):
        self.message = message
        self.code = code  # business error code
        self.status_code = status_code  # HTTP status
        self.details = details
        super().__init__(self.message)


class BadRequestException(BaseAPIException):
    """400"""

    def __init__(
        self, message: str = "Bad request", code: int = 4000, details: Any = None
    ):
        super().__init__(message=message, code=code, status_code=400, details=details)


class NotFoundException(BaseAPIException):
    """404"""

    def __init__(
        self, message: str = "Resource not found", code: int = 4040, details: Any = None
    ):
        super().__init__(message=message, code=code, status_code=404, details=details)


class ConflictException(BaseAPIException):
    """409"""

    def __init__(
        self, message: str = "Resource conflict", code: int = 4090, details: Any = None
    ):
        super().__init__(message=message, code=code, status_code=409, details=details)


class InternalServerException(BaseAPIException):
    """500"""

    def __init__(
        self,
        message: str = "Internal server error",
        code: int = 5000,
        details: Any = None,
    ):
        super().__init__(message=message, code=code, status_code=500, details=details)


class PaymentProviderException(BaseAPIException):
    """502, provider answered with something unusable"""

    def __init__(
        self,
        message: str = "Payment provider error",
        code: int = 5020,
        details: Any = None,
    ):
        super().__init__(message=message, code=code, status_code=502, details=details)


class UnsupportedGatewayError(NotFoundException):
    """Gateway name outside the supported set"""

    def __init__(self, name: str):
        super().__init__(
            message=f"Unsupported payment gateway: {name}",
            code=4046,
            details={"gateway": name},
        )


class GatewayConfigurationError(InternalServerException):
    """Gateway requested without the credentials it needs"""

    def __init__(self, gateway: str, missing: list[str]):
        super().__init__(
            message=f"{gateway} gateway is not configured",
            code=5004,
            details={"gateway": gateway, "missing": missing},
        )
