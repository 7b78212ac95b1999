"""
Caller identities and the collaborator that resolves them.

A caller is either a stored user (``UserIdentity``) or the configured
administrator (``AdminIdentity``). The administrator has no row in the
``user`` collection; it is recognized by matching credentials against the
injected ``Settings`` and is carried around as its own type, so the engine
dispatches on ``isinstance`` instead of comparing id strings.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from database import USERS

logger = logging.getLogger(__name__)

INDIVIDUAL = "individual"
BUSINESS = "business"
EDUCATIONAL = "educational"
RECYCLER = "recycler"
ADMIN = "admin"

USER_ROLES = (INDIVIDUAL, BUSINESS, EDUCATIONAL, RECYCLER)
ROLE_PATTERN = r"^(" + "|".join(USER_ROLES) + r")$"
SUBMITTER_ROLES = (INDIVIDUAL, BUSINESS, EDUCATIONAL)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class UserIdentity:
    id: str
    role: str


@dataclass(frozen=True)
class AdminIdentity:
    id: str = ADMIN
    role: str = ADMIN


Identity = Union[UserIdentity, AdminIdentity]


def is_admin(identity: Identity) -> bool:
    return isinstance(identity, AdminIdentity)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


class IdentityResolver:
    """Issues access tokens and turns them back into identities."""

    def __init__(self, settings: Settings, store):
        self.settings = settings
        self.store = store

    def create_access_token(self, identity: Identity, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes)
        )
        to_encode = {"sub": identity.id, "role": identity.role, "exp": expire}
        return jwt.encode(to_encode, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def admin_login(self, email: str, password: str) -> Optional[AdminIdentity]:
        email_ok = hmac.compare_digest(email.strip().lower().encode(), self.settings.admin_email.encode())
        password_ok = hmac.compare_digest(password.encode(), self.settings.admin_password.encode())
        if email_ok and password_ok:
            return AdminIdentity()
        logger.warning("Rejected admin login attempt")
        return None

    def user_login(self, email: str, password: str) -> Optional[dict]:
        matches = self.store.query(USERS, {"email": email.strip().lower()})
        if not matches:
            return None
        user_doc = matches[0]
        if not verify_password(password, user_doc.get("password_hash", "")):
            return None
        return user_doc

    def resolve(self, token: str) -> Optional[Identity]:
        """Return the identity behind a token, or None when it is not valid."""
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algorithm])
        except JWTError:
            return None

        subject = payload.get("sub")
        if subject is None:
            return None
        if payload.get("role") == ADMIN and subject == ADMIN:
            return AdminIdentity()

        user_doc = self.store.get(USERS, subject)
        if not user_doc:
            return None
        # Role comes from the stored row, never from the token claim.
        return UserIdentity(id=user_doc["id"], role=user_doc["role"])
