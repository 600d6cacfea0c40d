"""
Route class that applies idempotency-key semantics to mutating endpoints.

Routers built with ``route_class=IdempotentRoute`` replay the stored response
when a request repeats a key with the same fingerprint and reject the key with
409 when the fingerprint differs. Requests without a key pass straight through.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, Coroutine, Optional

from fastapi import Request, Response
from fastapi.routing import APIRoute

from oauth_proxy.core.errors import IdempotencyConflictError
from oauth_proxy.core.logging import digest_for_log
from oauth_proxy.dependencies.clients import get_idempotency_service
from oauth_proxy.services.idempotency import (
    IDEMPOTENCY_BODY_FIELD,
    IDEMPOTENCY_HEADER,
    MUTATING_METHODS,
    IdempotencyService,
    compute_fingerprint,
    parse_body,
)

logger = logging.getLogger(__name__)

REPLAY_HEADER = "Idempotent-Replayed"


def _resolve_service(request: Request) -> IdempotencyService:
    factory = request.app.dependency_overrides.get(
        get_idempotency_service, get_idempotency_service
    )
    return factory()


def _principal(request: Request) -> Optional[str]:
    """Digest of the caller's credentials so keys cannot replay across callers."""
    authorization = request.headers.get("authorization")
    if not authorization:
        return None
    return hashlib.sha256(authorization.encode("utf-8")).hexdigest()


class IdempotentRoute(APIRoute):
    def get_route_handler(self) -> Callable[[Request], Coroutine[None, None, Response]]:
        handler = super().get_route_handler()

        async def idempotent_handler(request: Request) -> Response:
            method = request.method.upper()
            if method not in MUTATING_METHODS:
                return await handler(request)

            raw_body = await request.body()
            body = parse_body(request.headers.get("content-type"), raw_body)
            key = request.headers.get(IDEMPOTENCY_HEADER)
            if not key and isinstance(body, dict):
                key = body.get(IDEMPOTENCY_BODY_FIELD)
            if not key:
                return await handler(request)

            key = str(key)
            path = request.url.path
            fingerprint = compute_fingerprint(
                method, path, body, principal=_principal(request)
            )
            service = _resolve_service(request)

            existing = service.lookup(key, method, path)
            if existing is not None:
                if existing.fingerprint != fingerprint:
                    logger.warning(
                        "[IDEMPOTENCY] Key reused with different body - Key: %s, Path: %s",
                        digest_for_log(key),
                        path,
                    )
                    raise IdempotencyConflictError()
                logger.info(
                    "[IDEMPOTENCY] Replaying stored response - Key: %s, Path: %s",
                    digest_for_log(key),
                    path,
                )
                return Response(
                    content=existing.response_body,
                    status_code=existing.response_status,
                    media_type=existing.media_type,
                    headers={REPLAY_HEADER: "true"},
                )

            response = await handler(request)
            stored_body = getattr(response, "body", None)
            if response.status_code < 500 and isinstance(stored_body, bytes):
                service.save(
                    key=key,
                    method=method,
                    path=path,
                    fingerprint=fingerprint,
                    response_status=response.status_code,
                    response_body=stored_body.decode("utf-8"),
                    media_type=response.media_type,
                )
            return response

        return idempotent_handler


__all__ = ["REPLAY_HEADER", "IdempotentRoute"]
