"""
Bearer token authentication for the server API.

Parses operator tokens from the API_TOKENS setting and validates incoming
``Authorization: Bearer {token}`` headers. Uses constant-time comparison via
secrets.compare_digest to prevent timing attacks. Read-only endpoints are
open; anything that moves water or changes configuration requires a token.

CHANGELOG:
- 2026-10-18: Lock mutating endpoints when no tokens are configured (STORY-019)
- 2026-10-18: Initial creation (STORY-018)

TODO:
- None
"""

import logging
import secrets

from fastapi import HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)


def parse_api_tokens(raw: str) -> dict[str, str]:
    """Parse the API_TOKENS setting into a token-to-operator mapping.

    Format: "token1:alice,token2:dashboard"

    Entries without a colon separator are skipped with a warning.
    Leading/trailing whitespace is stripped from both tokens and names.

    Args:
        raw: The raw comma-separated token:operator string.

    Returns:
        dict[str, str]: Mapping of token -> operator name.
    """
    if not raw or not raw.strip():
        return {}

    token_map: dict[str, str] = {}
    for idx, entry in enumerate(raw.split(",")):
        entry = entry.strip()
        if ":" not in entry:
            logger.warning(
                "Skipping malformed API_TOKENS entry at position %d"
                " (no colon separator)",
                idx,
            )
            continue
        token, operator = entry.split(":", maxsplit=1)
        token = token.strip()
        operator = operator.strip()
        if token and operator:
            token_map[token] = operator
    return token_map


def verify_bearer_token(token: str, token_map: dict[str, str]) -> str | None:
    """Validate a bearer token using constant-time comparison.

    Every configured token is compared so the time taken does not reveal
    which (if any) matched.

    Returns:
        The operator name if the token is valid, None otherwise.
    """
    if not token:
        return None

    match: str | None = None
    for registered_token, operator in token_map.items():
        if secrets.compare_digest(
            token.encode("utf-8"), registered_token.encode("utf-8")
        ):
            match = operator
    return match


class BearerAuth:
    """Operator authentication for mutating endpoints.

    HTTP routes use ``verify`` through FastAPI's ``Depends``; the WebSocket
    handler, which cannot send headers from a browser, passes its query
    token to ``operator_for``. With no tokens configured every mutating
    call is refused.

    Attributes:
        token_map: Mapping of valid token -> operator name.
        scheme: FastAPI HTTPBearer security scheme.
    """

    def __init__(self, token_map: dict[str, str]) -> None:
        self.token_map = token_map
        self.scheme = HTTPBearer(auto_error=False)

    @property
    def enabled(self) -> bool:
        return bool(self.token_map)

    def operator_for(self, token: str | None) -> str | None:
        if not token or not self.enabled:
            return None
        return verify_bearer_token(token, self.token_map)

    async def verify(self, request: Request) -> str:
        """Validate the request's Bearer token and return the operator name.

        Raises:
            HTTPException: 401 Unauthorized if no tokens are configured, or
                the token is missing or unknown.
        """
        if not self.enabled:
            raise HTTPException(
                status_code=401,
                detail="Operator API is locked: no API_TOKENS configured.",
                headers={"WWW-Authenticate": "Bearer"},
            )

        credentials: HTTPAuthorizationCredentials | None = await self.scheme(request)
        if credentials is None:
            raise HTTPException(
                status_code=401,
                detail="Missing authorization credentials.",
                headers={"WWW-Authenticate": "Bearer"},
            )

        operator = self.operator_for(credentials.credentials)
        if operator is None:
            logger.warning("Rejected operator token on %s", request.url.path)
            raise HTTPException(
                status_code=401,
                detail="Invalid or expired token.",
                headers={"WWW-Authenticate": "Bearer"},
            )

        return operator
