"""
Bearer authentication for endpoints called with a proxy token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Request

from oauth_proxy.core.errors import CredentialNotFoundError, UnauthorizedError
from oauth_proxy.dependencies.clients import get_credential_store, get_proxy_token_service
from oauth_proxy.services.credential_store import CredentialStore
from oauth_proxy.services.proxy_tokens import ProxyTokenService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthenticatedSubject:
    subject_id: str
    email: Optional[str] = None


def _bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def get_current_subject(
    request: Request,
    proxy_tokens: Annotated[ProxyTokenService, Depends(get_proxy_token_service)],
    credential_store: Annotated[CredentialStore, Depends(get_credential_store)],
) -> AuthenticatedSubject:
    """Resolve the proxy bearer token to the subject whose credentials it unlocks."""
    token = _bearer_token(request)
    if token is None:
        raise UnauthorizedError("Missing or invalid authorization header.")

    subject_id = proxy_tokens.resolve_proxy_token(token)
    if subject_id is None:
        raise UnauthorizedError("Invalid or expired access token.")

    record = credential_store.get_record(subject_id)
    if record is None:
        logger.warning("Proxy token resolved to subject %s without credentials", subject_id)
        raise CredentialNotFoundError()
    return AuthenticatedSubject(subject_id=subject_id, email=record.email)


CurrentSubject = Annotated[AuthenticatedSubject, Depends(get_current_subject)]

__all__ = ["AuthenticatedSubject", "CurrentSubject", "get_current_subject"]
