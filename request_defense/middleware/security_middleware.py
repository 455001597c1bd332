"""
Security middleware applying the request defense pipeline to every request.
"""

import time
from typing import Optional

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from request_defense.models.security import RequestDescriptor, Verdict, VerdictAction
from request_defense.services.pipeline import WAF_CHALLENGE, DefensePipeline

INSPECTED_BODY_METHODS = {"POST", "PUT", "PATCH"}
INSPECTED_CONTENT_TYPES = ("application/json", "text/", "application/x-www-form-urlencoded")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'",
}


async def build_request_descriptor(request: Request, max_body_bytes: int = 10_000) -> RequestDescriptor:
    """Transport-neutral view of a Starlette request with a capped body."""
    body: Optional[bytes] = None
    if request.method in INSPECTED_BODY_METHODS:
        content_type = request.headers.get("content-type", "")
        if any(content_type.startswith(t) or t in content_type for t in INSPECTED_CONTENT_TYPES):
            try:
                body = (await request.body())[:max_body_bytes]
            except Exception as e:
                logger.debug(f"Request body unavailable for inspection: {e}")

    return RequestDescriptor(
        method=request.method,
        url=str(request.url),
        path=request.url.path,
        query_params=list(request.query_params.multi_items()),
        headers=dict(request.headers),
        client_host=request.client.host if request.client else None,
        body=body,
        user_id=getattr(request.state, "user_id", None),
    )


class SecurityMiddleware(BaseHTTPMiddleware):
    """Runs the defense pipeline and turns its verdict into a response."""

    def __init__(self, app, pipeline: DefensePipeline):
        super().__init__(app)
        self.pipeline = pipeline
        self._bypass_paths = {
            "/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico",
        }

    async def dispatch(self, request: Request, call_next):
        """Process request through the defense pipeline."""
        if self._should_bypass_security(request):
            return await call_next(request)

        start_time = time.time()
        try:
            descriptor = await build_request_descriptor(request, self.pipeline.settings.MAX_BODY_BYTES)
            verdict = await self.pipeline.inspect(descriptor)
        except Exception as e:
            logger.opt(exception=e).error(f"Security pipeline error, allowing request: {e}")
            return await call_next(request)

        request.state.verdict = verdict

        if verdict.action != VerdictAction.ALLOW:
            logger.info(
                f"{verdict.action.value} {request.method} {request.url.path} from {verdict.client_ip} "
                f"({verdict.reason}, {time.time() - start_time:.3f}s)"
            )
            return self._create_security_response(verdict)

        response = await call_next(request)
        if response.status_code == 401 and self._is_login_path(request):
            await self._report_failed_login(descriptor, verdict)
        self._add_security_headers(response, verdict)
        return response

    def _is_login_path(self, request: Request) -> bool:
        return self.pipeline.rate_limits.scope_for_path(request.url.path) == "auth"

    async def _report_failed_login(self, descriptor: RequestDescriptor, verdict: Verdict) -> None:
        identifier = descriptor.user_id or verdict.client_ip
        try:
            await self.pipeline.report_failed_login(verdict.client_ip, identifier, descriptor.user_id)
        except Exception as e:
            logger.opt(exception=e).error(f"Failed login report for {verdict.client_ip} failed: {e}")

    def _should_bypass_security(self, request: Request) -> bool:
        """Check if request should bypass security checks."""
        path = request.url.path
        if path in self._bypass_paths:
            return True
        # Bypass OPTIONS requests for CORS
        return request.method == "OPTIONS"

    def _create_security_response(self, verdict: Verdict) -> JSONResponse:
        """Generic client-facing response; rule names stay in the event trail."""
        if verdict.action == VerdictAction.BLOCK:
            content = {
                "error": "Access Denied",
                "message": "Your request has been blocked.",
                "code": "WAF_BLOCKED",
            }
        elif verdict.waf_status == WAF_CHALLENGE:
            content = {
                "error": "Security Challenge Required",
                "message": "Please complete the security challenge to continue.",
                "code": "WAF_CHALLENGE",
            }
        else:
            rate_limit = verdict.rate_limit
            content = {
                "error": "Rate limit exceeded",
                "message": "Too many requests. Please try again later.",
                "code": "RATE_LIMITED",
                "retry_after": rate_limit.retry_after if rate_limit else None,
                "limit": rate_limit.limit if rate_limit else None,
            }

        response = JSONResponse(status_code=verdict.http_status, content=content)
        self._add_security_headers(response, verdict)
        return response

    def _add_security_headers(self, response: Response, verdict: Verdict) -> None:
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        for header, value in verdict.response_headers.items():
            response.headers[header] = value
