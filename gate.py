"""
Admin session gate

Every admin-scoped request goes through, in order and stopping at the first
failure:

    1. loopback-only IP admission          -> 403
    2. admin feature flag                  -> 403
    3. per-caller sliding-window limit     -> 429
    4. CSRF header vs. session token       -> 403 (mutating requests)
    5. authenticated session               -> 403 (protected routes)

Sessions live server-side, keyed by the `admin.sid` HTTP-only cookie.
"""
import hmac
import secrets
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from fastapi import HTTPException, Request
from starlette.responses import Response

from settings import Settings

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "::ffff:127.0.0.1"})
SESSION_COOKIE = "admin.sid"
CSRF_HEADER = "x-csrf-token"
NOINDEX = "noindex, nofollow"


class GateError(Exception):
    status_code = 403
    detail = "Forbidden"


class Forbidden(GateError):
    pass


class TooManyRequests(GateError):
    status_code = 429
    detail = "Too Many Requests"


class RateLimiter:
    """
    Sliding window of request timestamps per caller. Windows are pruned lazily
    on each hit; the least recently seen caller is evicted past `max_keys`.
    """

    def __init__(self, window: float, limit: int, max_keys: int, clock: Callable[[], float]):
        self.window = window
        self.limit = limit
        self.max_keys = max_keys
        self.clock = clock
        self._buckets: "OrderedDict[str, Deque[float]]" = OrderedDict()

    def hit(self, key: str) -> bool:
        now = self.clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = deque(maxlen=self.limit + 1)
            self._buckets[key] = bucket
            while len(self._buckets) > self.max_keys:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        while bucket and now - bucket[0] >= self.window:
            bucket.popleft()
        bucket.append(now)
        return len(bucket) <= self.limit

    def __len__(self) -> int:
        return len(self._buckets)


@dataclass
class AdminSession:
    id: str
    created_at: float
    last_seen: float
    authenticated: bool = False
    csrf_token: Optional[str] = None
    admin_email: Optional[str] = None
    new: bool = field(default=False, repr=False)

    def ensure_csrf(self) -> str:
        if not self.csrf_token:
            self.csrf_token = secrets.token_hex(24)
        return self.csrf_token


class SessionStore:
    def __init__(self, ttl: float, max_size: int, clock: Callable[[], float]):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self._sessions: "OrderedDict[str, AdminSession]" = OrderedDict()

    def get(self, session_id: Optional[str]) -> Optional[AdminSession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self.clock()
        if now - session.last_seen >= self.ttl:
            self.destroy(session_id)
            return None
        session.last_seen = now
        session.new = False
        self._sessions.move_to_end(session_id)
        return session

    def create(self) -> AdminSession:
        now = self.clock()
        session = AdminSession(id=secrets.token_urlsafe(32), created_at=now, last_seen=now, new=True)
        self._sessions[session.id] = session
        while len(self._sessions) > self.max_size:
            self._sessions.popitem(last=False)
        return session

    def destroy(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


class AdminGate:
    def __init__(self, settings: Settings, sessions: SessionStore, limiter: RateLimiter):
        self.settings = settings
        self.sessions = sessions
        self.limiter = limiter

    def admit(self, request: Request, *, csrf: bool = False, authenticated: bool = False) -> AdminSession:
        request.state.admin_scoped = True
        host = request.client.host if request.client else ""
        if host not in LOOPBACK_ADDRESSES:
            raise Forbidden()
        if not self.settings.admin_enabled:
            raise Forbidden()
        if not self.limiter.hit(host or "unknown"):
            raise TooManyRequests()

        session = self.sessions.get(request.cookies.get(SESSION_COOKIE))
        if csrf:
            token = request.headers.get(CSRF_HEADER)
            if session is None or not token or not session.csrf_token:
                raise Forbidden()
            if not hmac.compare_digest(token.encode(), session.csrf_token.encode()):
                raise Forbidden()
        if authenticated and (session is None or not session.authenticated):
            raise Forbidden()

        if session is None:
            session = self.sessions.create()
        request.state.admin_session = session
        return session

    def destroy(self, request: Request, session: AdminSession) -> None:
        self.sessions.destroy(session.id)
        request.state.admin_session_destroyed = True

    def apply_cookies(self, request: Request, response: Response) -> None:
        """Attach the session cookie and noindex header to admin responses."""
        if not getattr(request.state, "admin_scoped", False):
            return
        response.headers["X-Robots-Tag"] = NOINDEX
        if getattr(request.state, "admin_session_destroyed", False):
            response.delete_cookie(SESSION_COOKIE, httponly=True, samesite="lax")
            return
        session = getattr(request.state, "admin_session", None)
        if session is not None and session.new:
            response.set_cookie(
                SESSION_COOKIE,
                session.id,
                httponly=True,
                samesite="lax",
                secure=self.settings.is_production,
            )


def admin_guard(*, csrf: bool = False, authenticated: bool = False):
    async def dependency(request: Request) -> AdminSession:
        gate: AdminGate = request.app.state.gate
        try:
            return gate.admit(request, csrf=csrf, authenticated=authenticated)
        except GateError as e:
            raise HTTPException(status_code=e.status_code, detail=e.detail)

    return dependency
