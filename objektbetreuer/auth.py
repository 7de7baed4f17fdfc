import calendar
import logging
import re
import secrets
import threading
import uuid
from collections import defaultdict, deque
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import select

from .database import get_session, store_errors
from .errors import (
    EmailAlreadyInUseError,
    InvalidCredentialsError,
    InvalidEmailError,
    NotAuthorizedError,
    PermissionDeniedError,
    TooManyRequestsError,
    UserNotFoundError,
    WeakPasswordError,
)
from .models import AppUser, PasswordReset, Principal, RevokedToken

logger = logging.getLogger("portal.auth")

ALGORITHM = "HS256"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# pbkdf2_sha256 hashes new passwords; bcrypt is kept so older hashes still verify
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def _epoch(dt) -> int:
    return calendar.timegm(dt.utctimetuple())


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def verify_password(plain, hashed):
    if not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except (ValueError, TypeError):
        return False


def get_password_hash(password):
    return pwd_context.hash(password)


class LocalAuthService:
    """Identity provider: principals, password checks, bearer tokens.

    The rest of the application treats this as an opaque collaborator and
    only relies on the operations below, so a hosted provider can replace it.
    """

    def __init__(self, engine, settings, clock, mailer=None):
        self.engine = engine
        self.settings = settings
        self.clock = clock
        self.mailer = mailer
        self._listeners: List[Callable[[str, bool], None]] = []
        self._failures = defaultdict(deque)
        self._lock = threading.Lock()

    # principal lifecycle

    def register(self, email: str, password: str) -> Principal:
        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            raise InvalidEmailError()
        if not password or len(password) < self.settings.min_password_length:
            raise WeakPasswordError()
        with store_errors(), get_session(self.engine) as s:
            if s.exec(select(Principal).where(Principal.email == email)).first():
                raise EmailAlreadyInUseError()
            p = Principal(email=email, hashed_password=get_password_hash(password), created_at=self.clock())
            s.add(p)
            s.commit()
            s.refresh(p)
        logger.info("Registered principal id=%s", p.id)
        return p

    def delete_principal(self, principal_id: str):
        with store_errors(), get_session(self.engine) as s:
            p = s.get(Principal, principal_id)
            if p:
                s.delete(p)
                s.commit()
                logger.info("Deleted principal id=%s", principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with store_errors(), get_session(self.engine) as s:
            return s.exec(select(Principal).where(Principal.email == normalize_email(email))).first()

    # sign in / out

    def sign_in(self, email: str, password: str) -> Tuple[Principal, str]:
        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            raise InvalidEmailError()
        self._check_rate_limit(email)
        p = self.get_principal_by_email(email)
        if not p:
            self._record_failure(email)
            raise UserNotFoundError()
        if not verify_password(password, p.hashed_password):
            self._record_failure(email)
            raise InvalidCredentialsError()
        with self._lock:
            self._failures.pop(email, None)
        token = self.create_access_token(p.id)
        self._notify(p.id, True)
        return p, token

    def sign_out(self, token: str):
        try:
            payload = jwt.decode(
                token, self.settings.secret_key, algorithms=[ALGORITHM], options={"verify_exp": False}
            )
        except JWTError:
            return
        self.revoke(payload.get("jti"), payload.get("sub"))

    def revoke(self, jti: Optional[str], principal_id: Optional[str] = None):
        if not jti:
            return
        with store_errors(), get_session(self.engine) as s:
            if not s.get(RevokedToken, jti):
                s.add(RevokedToken(jti=jti, principal_id=principal_id, revoked_at=self.clock()))
                s.commit()
        if principal_id:
            self._notify(principal_id, False)

    def on_principal_changed(self, callback: Callable[[str, bool], None]) -> Callable[[], None]:
        """Register ``callback(principal_id, signed_in)``; returns the unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def _notify(self, principal_id: str, signed_in: bool):
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(principal_id, signed_in)
            except Exception:
                logger.exception("Principal listener failed")

    # tokens

    def create_access_token(self, principal_id: str, expires_delta: Optional[timedelta] = None) -> str:
        expire = self.clock() + (expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes))
        to_encode = {"sub": principal_id, "jti": uuid.uuid4().hex, "exp": expire}
        return jwt.encode(to_encode, self.settings.secret_key, algorithm=ALGORITHM)

    def authenticate_token(self, token: str) -> Tuple[str, str]:
        """Return (principal_id, jti) for a valid, unrevoked token."""
        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[ALGORITHM],
                # expiry is checked against the injected clock below
                options={"verify_exp": False},
            )
        except JWTError:
            raise NotAuthorizedError("Could not validate credentials")
        principal_id, jti, exp = payload.get("sub"), payload.get("jti"), payload.get("exp")
        if not principal_id or not jti:
            raise NotAuthorizedError("Could not validate credentials")
        if exp is not None and exp < _epoch(self.clock()):
            raise NotAuthorizedError("Token expired")
        with store_errors(), get_session(self.engine) as s:
            if s.get(RevokedToken, jti):
                raise NotAuthorizedError("Token revoked")
        return principal_id, jti

    # password reset

    def send_password_reset(self, email: str):
        p = self.get_principal_by_email(email)
        if not p:
            # same response whether or not the account exists
            logger.info("Password reset requested for unknown email")
            return
        token = secrets.token_urlsafe(24)
        expires = self.clock() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        with store_errors(), get_session(self.engine) as s:
            s.add(PasswordReset(token=token, principal_id=p.id, expires_at=expires))
            s.commit()
        if self.mailer:
            self.mailer.send_password_reset(p.email, token)

    def confirm_password_reset(self, token: str, new_password: str):
        if not new_password or len(new_password) < self.settings.min_password_length:
            raise WeakPasswordError()
        with store_errors(), get_session(self.engine) as s:
            reset = s.get(PasswordReset, token)
            if not reset or reset.used_at or reset.expires_at < self.clock():
                raise InvalidCredentialsError("Der Link zum Zurücksetzen ist ungültig oder abgelaufen.")
            p = s.get(Principal, reset.principal_id)
            if not p:
                raise UserNotFoundError()
            p.hashed_password = get_password_hash(new_password)
            reset.used_at = self.clock()
            s.add(p)
            s.add(reset)
            s.commit()
        logger.info("Password reset completed for principal id=%s", reset.principal_id)

    # rate limiting

    def _check_rate_limit(self, email: str):
        cutoff = _epoch(self.clock()) - self.settings.login_window_seconds
        with self._lock:
            q = self._failures.get(email)
            if q is None:
                return
            while q and q[0] < cutoff:
                q.popleft()
            if not q:
                del self._failures[email]
                return
            if len(q) >= self.settings.login_max_attempts:
                raise TooManyRequestsError()

    def _record_failure(self, email: str):
        with self._lock:
            self._failures[email].append(_epoch(self.clock()))


# FastAPI dependencies

def get_ctx(request: Request):
    return request.app.state.ctx


def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> AppUser:
    ctx = get_ctx(request)
    principal_id, jti = ctx.auth.authenticate_token(token)
    user = ctx.identity.resolve(principal_id)
    if user is None:
        # no usable profile: force sign-out
        ctx.auth.revoke(jti, principal_id)
        raise NotAuthorizedError()
    return user


def require_company(user: AppUser = Depends(get_current_user)) -> AppUser:
    if not user.is_company:
        raise PermissionDeniedError("Nur für Unternehmenskonten.")
    return user
