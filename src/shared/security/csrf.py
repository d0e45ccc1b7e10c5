"""
CSRF token issuance and validation.

One active token per session. Tokens expire after ``token_ttl_seconds`` and can
be revoked explicitly with ``invalidate_token``; validation always fails closed.
"""

import base64
import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from http.cookies import SimpleCookie
from typing import Callable, Dict, Iterable, Optional

from starlette.requests import Request

from ..config import CSRFSettings
from ..logging_config import get_logger
from .rate_limiter import get_client_ip


@dataclass(frozen=True)
class CSRFToken:
    token: str
    expires: int


def derive_session_id(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Session identifier for anonymous visitors.

    Marketing visitors have no login session, so the client address and user
    agent stand in for one. The address is resolved with the same proxy trust
    as the rate limiter.
    """
    ip = get_client_ip(request, trusted_proxies)
    user_agent = request.headers.get('user-agent', '')
    return base64.b64encode(f"{ip}:{user_agent}".encode('utf-8')).decode('ascii')


class CSRFGuard:
    """Per-session anti-forgery tokens."""

    def __init__(self, settings: Optional[CSRFSettings] = None, secure_cookie: bool = True,
                 clock: Callable[[], int] = None):
        self.settings = settings or CSRFSettings()
        self.secure_cookie = secure_cookie
        self.clock = clock or (lambda: int(time.time() * 1000))
        self.logger = get_logger(__name__, 'csrf')
        self._tokens: Dict[str, CSRFToken] = {}
        self._lock = threading.Lock()

    @property
    def cookie_name(self) -> str:
        return self.settings.cookie_name

    @property
    def header_name(self) -> str:
        return self.settings.header_name

    @property
    def ttl_ms(self) -> int:
        return self.settings.token_ttl_seconds * 1000

    def generate_token(self, session_id: str) -> str:
        """Issue a fresh token for ``session_id``, replacing any previous one."""
        now = self.clock()
        token = secrets.token_urlsafe(self.settings.token_length)
        with self._lock:
            self._tokens[session_id] = CSRFToken(token=token, expires=now + self.ttl_ms)
        self.cleanup(now)
        return token

    def validate_token(self, session_id: Optional[str], provided_token: Optional[str]) -> bool:
        if not session_id or not provided_token:
            return False

        now = self.clock()
        with self._lock:
            stored = self._tokens.get(session_id)
            if stored is None:
                return False
            if now > stored.expires:
                del self._tokens[session_id]
                return False

        return hmac.compare_digest(stored.token.encode('utf-8'), provided_token.encode('utf-8'))

    def invalidate_token(self, session_id: str) -> bool:
        with self._lock:
            return self._tokens.pop(session_id, None) is not None

    def get_token_from_request(self, request: Request) -> Optional[str]:
        """Token from the CSRF header, falling back to the CSRF cookie."""
        header_token = request.headers.get(self.header_name)
        if header_token:
            return header_token

        cookie_token = request.cookies.get(self.cookie_name)
        if cookie_token:
            return cookie_token

        return None

    def create_cookie(self, token: str) -> str:
        """Set-Cookie header value carrying ``token``."""
        cookie = SimpleCookie()
        cookie[self.cookie_name] = token
        morsel = cookie[self.cookie_name]
        morsel['httponly'] = True
        morsel['samesite'] = self.settings.same_site
        morsel['path'] = '/'
        morsel['max-age'] = self.settings.token_ttl_seconds
        if self.secure_cookie:
            morsel['secure'] = True
        return morsel.OutputString()

    def cleanup(self, now: Optional[int] = None) -> int:
        """Drop expired tokens. Returns the number removed."""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [sid for sid, data in self._tokens.items() if data.expires < now]
            for sid in expired:
                del self._tokens[sid]
        if expired:
            self.logger.debug(f"Removed {len(expired)} expired CSRF tokens", operation="cleanup")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
