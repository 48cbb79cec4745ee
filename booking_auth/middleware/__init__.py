from booking_auth.middleware.client_context import ClientContextMiddleware

__all__ = [
    "ClientContextMiddleware",
]
