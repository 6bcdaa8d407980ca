"""Bearer-token guard for the SSE endpoints.

Token validation itself is delegated to a :class:`TokenValidator`; mcplink only
extracts the token, asks the validator, and refuses the request when it fails.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from starlette.authentication import AuthCredentials, AuthenticationBackend, SimpleUser
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)


class UnauthorizedError(Exception):
    """The presented token is not acceptable."""


@dataclass(frozen=True)
class Principal:
    """The identity a validated token stands for."""

    subject: str
    scopes: list[str] = field(default_factory=list)
    claims: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class TokenValidator(Protocol):
    async def validate(self, token: str) -> Principal:
        """Return the principal for ``token``.

        Raises:
            UnauthorizedError: if the token is unknown, expired or otherwise invalid.
        """
        ...


class StaticTokenValidator:
    """Validates tokens against a fixed table. Meant for tests and demos."""

    def __init__(self, tokens: dict[str, Principal]):
        self._tokens = dict(tokens)

    async def validate(self, token: str) -> Principal:
        try:
            return self._tokens[token]
        except KeyError:
            raise UnauthorizedError("Unknown token") from None


class AuthenticatedUser(SimpleUser):
    """User with authentication info."""

    def __init__(self, principal: Principal):
        super().__init__(principal.subject)
        self.principal = principal
        self.scopes = principal.scopes


class BearerAuthBackend(AuthenticationBackend):
    """Authentication backend that validates Bearer tokens using a TokenValidator."""

    def __init__(self, token_validator: TokenValidator):
        self.token_validator = token_validator

    async def authenticate(self, conn: HTTPConnection):
        auth_header = conn.headers.get("authorization")
        if not auth_header or not auth_header.lower().startswith("bearer "):
            return None

        token = auth_header[7:]  # Remove "Bearer " prefix

        try:
            principal = await self.token_validator.validate(token)
        except UnauthorizedError as e:
            logger.info("Rejected bearer token: %s", e)
            return None

        return AuthCredentials(principal.scopes), AuthenticatedUser(principal)


class RequireAuthMiddleware:
    """Middleware that requires a valid Bearer token in the Authorization header.

    Must sit behind starlette's ``AuthenticationMiddleware`` configured with a
    :class:`BearerAuthBackend`.
    """

    def __init__(self, app: ASGIApp, required_scopes: list[str] | None = None):
        self.app = app
        self.required_scopes = required_scopes or []

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        auth_user = scope.get("user")
        if not isinstance(auth_user, AuthenticatedUser):
            await self._send_auth_error(
                send, status_code=401, error="invalid_token", description="Authentication required"
            )
            return

        auth_credentials = scope.get("auth")

        for required_scope in self.required_scopes:
            if auth_credentials is None or required_scope not in auth_credentials.scopes:
                await self._send_auth_error(
                    send, status_code=403, error="insufficient_scope", description=f"Required scope: {required_scope}"
                )
                return

        await self.app(scope, receive, send)

    async def _send_auth_error(self, send: Send, status_code: int, error: str, description: str) -> None:
        """Send an authentication error response with WWW-Authenticate header."""
        www_authenticate = f'Bearer error="{error}", error_description="{description}"'
        body_bytes = json.dumps({"error": error, "error_description": description}).encode()

        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body_bytes)).encode()),
                    (b"www-authenticate", www_authenticate.encode()),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body_bytes})
