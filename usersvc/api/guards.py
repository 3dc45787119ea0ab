"""Request guards run in a fixed order before a handler.

Each guard either returns (continue) or raises a :class:`ServiceError`
(terminal rejection). Routes declare their pipeline explicitly, e.g.
``Depends(guarded(rate_limit(LOGIN)))`` or ``Depends(guarded(auth_gate))``,
so precedence never depends on framework dependency ordering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response

from usersvc.service.errors import RateLimitedError
from usersvc.service.runtime import Runtime
from usersvc.service.verifier import Principal


@dataclass
class GuardContext:
    request: Request
    response: Response
    runtime: Runtime
    language: str
    principal: Optional[Principal] = None
    trace: list[str] = field(default_factory=list)

    def require_principal(self) -> Principal:
        if self.principal is None:
            raise RuntimeError("route declared no auth gate")
        return self.principal


Guard = Callable[[GuardContext], Awaitable[None]]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_key(request: Request, *, trust_forwarded_for: bool) -> str:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def rate_limit(policy_name: str) -> Guard:
    """Guard counting the request against ``policy_name`` for the client address."""

    async def _guard(ctx: GuardContext) -> None:
        limiter = ctx.runtime.limiter(policy_name)
        key = client_key(
            ctx.request, trust_forwarded_for=ctx.runtime.settings.trust_forwarded_for
        )
        decision = await limiter.hit(key)
        ctx.response.headers["X-RateLimit-Limit"] = str(decision.limit)
        ctx.response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        ctx.response.headers["X-RateLimit-Reset"] = str(decision.reset_seconds)
        ctx.trace.append(f"rate_limit:{policy_name}")
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after, limit=decision.limit)

    return _guard


async def auth_gate(ctx: GuardContext) -> None:
    """Verify the bearer token and attach the principal.

    On success the ``last_active_at`` write is scheduled in the background;
    the request does not wait for it.
    """
    token = extract_bearer(ctx.request.headers.get("authorization"))
    principal = await ctx.runtime.verifier.verify(token)
    ctx.principal = principal
    ctx.trace.append("auth_gate")
    ctx.runtime.activity.schedule(principal.id)


def guarded(*guards: Guard) -> Callable[[Request, Response], Awaitable[GuardContext]]:
    """Build a dependency running ``guards`` in the order given."""

    async def _dependency(request: Request, response: Response) -> GuardContext:
        runtime = get_runtime(request)
        ctx = GuardContext(
            request=request,
            response=response,
            runtime=runtime,
            language=runtime.languages.resolve_request(request),
        )
        for guard in guards:
            await guard(ctx)
        return ctx

    return _dependency
