from injapanfood.middleware.request_log import RequestLoggingMiddleware
from injapanfood.middleware.security import AuditMiddleware, SecurityHeadersMiddleware

__all__ = ["AuditMiddleware", "RequestLoggingMiddleware", "SecurityHeadersMiddleware"]
