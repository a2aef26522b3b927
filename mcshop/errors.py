from __future__ import annotations
from typing import Optional


class ShopError(Exception):
    status_code = 500
    default_message = "Error interno del servidor"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ShopError):
    status_code = 400
    default_message = "Solicitud inválida"


class AuthenticationError(ShopError):
    status_code = 401
    default_message = "Autenticación inválida"


class ForbiddenError(ShopError):
    status_code = 403
    default_message = "Acceso denegado"


class NotFoundError(ShopError):
    status_code = 404
    default_message = "Recurso no encontrado"


class ConflictError(ShopError):
    # consumed or expired capability
    status_code = 410
    default_message = "Recurso no disponible"


class RateLimited(ShopError):
    status_code = 429
    default_message = "Demasiadas solicitudes"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message)


class InternalError(ShopError):
    status_code = 500


# ----------------------------
# Payment authority
# ----------------------------
class GatewayError(ShopError):
    status_code = 502
    default_message = "Error del proveedor de pagos"


class InvalidAmount(ValidationError):
    default_message = "El monto debe ser un número válido mayor a 0"


class GatewayAuthError(GatewayError):
    default_message = (
        "Error de autenticación con el proveedor de pagos. "
        "Verifica las credenciales."
    )


class GatewayBadRequest(GatewayError):
    default_message = "Parámetros inválidos enviados al proveedor de pagos"


class GatewayProtocolError(GatewayError):
    default_message = "Respuesta inválida del proveedor de pagos"


# ----------------------------
# Reconciliation
# ----------------------------
class MissingToken(ValidationError):
    default_message = "Token requerido"


class OrderNotFound(NotFoundError):
    default_message = "Orden no encontrada"
