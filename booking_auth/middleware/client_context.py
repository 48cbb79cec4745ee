# booking_auth/middleware/client_context.py
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from booking_auth.auth.utils import extract_client_context


class ClientContextMiddleware(BaseHTTPMiddleware):
    """
    Resolves the caller's (ip, user agent) pair once per request and attaches it
    as ``request.state.client``. Token binding, rate-limit keys and audit
    entries all read this single value.
    """

    def __init__(self, app, trust_proxy_headers: bool = False):
        super().__init__(app)
        self.trust_proxy_headers = trust_proxy_headers

    async def dispatch(self, request: Request, call_next):
        request.state.client = extract_client_context(request, self.trust_proxy_headers)
        return await call_next(request)
