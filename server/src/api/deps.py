"""
FastAPI dependency injection providers.

Provides the server runtime and operator authentication for use with
FastAPI's Depends() mechanism. Both live on ``app.state``, set by
``create_app``.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-018)
"""

from typing import Annotated

from fastapi import Depends, Request

from server.src.runtime import ServerRuntime


def get_runtime(request: Request) -> ServerRuntime:
    """Return the ServerRuntime the app was created with."""
    return request.app.state.runtime


async def require_operator(request: Request) -> str:
    """Authenticate via BearerAuth on app.state and return the operator name."""
    return await request.app.state.auth.verify(request)


# Usage in route handlers:
#   async def my_route(runtime: RuntimeDep, operator: OperatorDep): ...
RuntimeDep = Annotated[ServerRuntime, Depends(get_runtime)]
OperatorDep = Annotated[str, Depends(require_operator)]
