"""Redirect URI allow-listing and authorization code sanity checks."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_AUTH_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_\-.~/]+$")
_AUTH_CODE_MIN_LENGTH = 10
_AUTH_CODE_MAX_LENGTH = 512


class RedirectGuard:
    """Reject redirect targets outside the agent's callback shape.

    Accepted URIs are either listed exactly or match
    ``https://<trusted host>/aip/g-<id>/oauth/callback``.
    """

    def __init__(
        self,
        *,
        allowed_hosts: Iterable[str],
        agent_id: Optional[str] = None,
        extra_redirect_uris: Iterable[str] = (),
        allow_localhost: bool = False,
    ) -> None:
        hosts = [host.strip().lower() for host in allowed_hosts if host.strip()]
        self._exact: set[str] = {uri for uri in extra_redirect_uris if uri}
        if agent_id:
            self._exact.update(
                f"https://{host}/aip/{agent_id}/oauth/callback" for host in hosts
            )
        host_group = "|".join(re.escape(host) for host in hosts) or r"(?!)"
        self._pattern = re.compile(
            rf"^https://({host_group})/aip/g-[A-Za-z0-9]+/oauth/callback$"
        )
        self._allow_localhost = allow_localhost

    def validate_redirect_uri(self, uri: Optional[str]) -> bool:
        if not uri:
            return False
        if uri in self._exact:
            return True
        if self._pattern.match(uri):
            return True
        if self._allow_localhost and re.match(r"^http://localhost:\d+/", uri):
            return True
        logger.warning("Rejected redirect_uri: %s", uri)
        return False

    @staticmethod
    def validate_auth_code(code: Optional[str]) -> bool:
        """Length and character-class check; not authoritative."""
        if not code or not isinstance(code, str):
            return False
        if not _AUTH_CODE_MIN_LENGTH <= len(code) <= _AUTH_CODE_MAX_LENGTH:
            logger.warning("Auth code length suspicious: %d", len(code))
            return False
        if not _AUTH_CODE_PATTERN.match(code):
            logger.warning("Auth code contains invalid characters")
            return False
        return True


__all__ = ["RedirectGuard"]
