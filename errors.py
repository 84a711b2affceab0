"""Taxonomía de errores de dominio.

Cada error lleva el código HTTP con el que se expone; los servicios los lanzan
y app.py los convierte en la respuesta estándar {"success": false, ...}.
"""

from typing import Any, Optional


class AppError(Exception):
    """Error base de la aplicación."""
    status_code = 500
    default_message = "Unexpected error."

    def __init__(self, message: Optional[str] = None, detail: Any = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request."


class UnsupportedMethod(ValidationError):
    default_message = "Invalid payment method. Only Momo is supported for now."


class Unauthorized(AppError):
    status_code = 401
    default_message = "Authentication required."


class InvalidCredentials(Unauthorized):
    default_message = "Invalid credentials."


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden."


class AccountSuspended(Forbidden):
    default_message = "Account is suspended."


class NotFound(AppError):
    status_code = 404
    default_message = "Not found."


class PaymentNotFound(NotFound):
    default_message = "Payment record not found."


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict."


class QuotaExceeded(Conflict):
    default_message = "Subuser limit reached."


class GatewayError(AppError):
    status_code = 502
    default_message = "Payment gateway error."


class InternalError(AppError):
    status_code = 500
    default_message = "Internal server error."
