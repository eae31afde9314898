"""
gateway/csrf.py -- Double-submit-cookie CSRF protection.

The client echoes the value of the "csrf-token" cookie in the X-CSRF-Token
header. A cross-site attacker can make the browser send the cookie but
cannot read it, so cannot produce the header. No server-side state beyond
the cookie is needed.

Which requests are checked:
  - HEAD and OPTIONS: never.
  - GET: only under a protected prefix (tenant listing endpoints).
  - Everything else: always.
  - Exempt paths and patterns (pre-session endpoints such as login) are
    skipped regardless of method, since no CSRF cookie exists yet there.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from gateway.errors import Rejection, forbidden
from gateway.tokens import TokenService

CSRF_COOKIE = "csrf-token"
CSRF_HEADER = "X-CSRF-Token"

_SAFE_METHODS = frozenset({"HEAD", "OPTIONS"})


class CsrfGuard:
    def __init__(
        self,
        tokens: TokenService,
        *,
        exempt_paths: Iterable[str] = (),
        exempt_patterns: Iterable[str] = (),
        protected_get_prefixes: Iterable[str] = (),
    ) -> None:
        self._tokens = tokens
        self._exempt_paths = tuple(exempt_paths)
        self._exempt_patterns = tuple(re.compile(p) for p in exempt_patterns)
        self._protected_get_prefixes = tuple(protected_get_prefixes)

    def applies_to(self, method: str, path: str) -> bool:
        method = method.upper()
        if method in _SAFE_METHODS:
            return False
        if any(path == p or path.startswith(p + "/") for p in self._exempt_paths):
            return False
        if any(p.match(path) for p in self._exempt_patterns):
            return False
        if method == "GET":
            return path.startswith(self._protected_get_prefixes)
        return True

    def guard(self, method: str, path: str, headers, cookies) -> Rejection | None:
        """Return None when the request may proceed, a 403 Rejection otherwise."""
        if not self.applies_to(method, path):
            return None
        submitted = headers.get(CSRF_HEADER)
        if not submitted:
            return forbidden("csrf_header_missing")
        stored = cookies.get(CSRF_COOKIE)
        if not stored:
            return forbidden("csrf_cookie_missing")
        if not self._tokens.validate_csrf_token(submitted, stored):
            return forbidden("csrf_mismatch_or_expired")
        return None
