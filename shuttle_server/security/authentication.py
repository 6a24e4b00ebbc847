import time
from datetime import timedelta, datetime
from typing import Optional

from jose import jwt, JWTError, ExpiredSignatureError

from shuttle_server.exception import AuthenticationError
from shuttle_server.utils.time_utils import now_utc

MALFORMED = "Malformed or missing token. Please provide a valid JWT token."
EXPIRED = "Token expired. Please login again or refresh your session."


class Identity:
    """Verified (user_id, role) pair handed to the messaging core by the auth layer."""

    __slots__ = ('user_id', 'role', 'name')

    def __init__(self, user_id: int, role: Optional[str] = None, name: Optional[str] = None):
        self.user_id = user_id
        self.role = role
        self.name = name

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def to_dict(self):
        return {'user_id': self.user_id, 'role': self.role, 'name': self.name}

    def __repr__(self):
        return f'Identity(user_id={self.user_id!r}, role={self.role!r})'


class AuthSecurity:
    """Verifies HS-signed JWTs issued by the shuttle auth service.

    Settings are class-level so that request handlers and the socket
    gateway share whatever ``configure`` installed at startup.
    """
    secret_key = None
    algorithm = 'HS256'
    access_token_expire_minutes = 24 * 60

    @classmethod
    def configure(cls, secret_key, algorithm='HS256', access_token_expire_minutes=24 * 60):
        cls.secret_key = secret_key
        cls.algorithm = algorithm
        cls.access_token_expire_minutes = access_token_expire_minutes

    @classmethod
    def encode_token(cls, data: dict, expires_delta: timedelta = None) -> str:
        """Issue a token. Token issuance belongs to the auth service; this is used by tooling and tests."""
        claims = dict(data)
        lifetime = expires_delta or timedelta(minutes=cls.access_token_expire_minutes)
        claims['exp'] = now_utc() + lifetime
        return jwt.encode(claims, cls.secret_key, algorithm=cls.algorithm)

    @classmethod
    def decode_token(cls, token: str) -> dict:
        # header.payload.signature
        if not isinstance(token, str) or token.count('.') != 2:
            raise AuthenticationError(MALFORMED)
        if not cls.secret_key:
            raise AuthenticationError("Token verification is not configured.")
        try:
            claims = jwt.decode(token, cls.secret_key, algorithms=[cls.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError(EXPIRED)
        except JWTError as e:
            reason = str(e)
            if 'segments' in reason or 'header' in reason.lower():
                raise AuthenticationError(MALFORMED)
            if 'verification failed' in reason:
                raise AuthenticationError("Invalid token signature. Please login again.")
            raise AuthenticationError(f"Invalid token: {reason}.")
        exp = claims.get('exp')
        if exp is not None:
            if isinstance(exp, datetime):
                exp = exp.timestamp()
            if int(float(exp)) < int(time.time()):
                raise AuthenticationError(EXPIRED)
        return claims

    @classmethod
    def identity_from_payload(cls, payload: dict) -> Identity:
        """Extract the (user_id, role) pair from a decoded payload.

        The user id is read from ``user_id`` and falls back to ``sub``; it must
        be an integer (or an integer string) because chat rows key on it.
        """
        raw = payload.get('user_id', payload.get('sub'))
        try:
            user_id = int(raw)
        except (TypeError, ValueError):
            raise AuthenticationError("Token does not identify a user.")
        role = payload.get('role')
        if role is None and payload.get('roles'):
            role = payload['roles'][0]
        return Identity(user_id, role=role, name=payload.get('name'))

    @classmethod
    def verify(cls, token: str) -> Identity:
        return cls.identity_from_payload(cls.decode_token(token))


def get_bearer_token(headers) -> Optional[str]:
    value = headers.get('Authorization') if headers else None
    scheme, _, token = (value or '').partition(' ')
    if scheme != 'Bearer' or not token.strip():
        return None
    return token.strip()


def get_auth_payload(request):
    """Decoded claims of the request's ``Authorization: Bearer`` token."""
    token = get_bearer_token(request.headers)
    if not token:
        raise AuthenticationError('Missing or invalid token')
    return AuthSecurity.decode_token(token)


def get_identity(request) -> Identity:
    return AuthSecurity.identity_from_payload(get_auth_payload(request))
