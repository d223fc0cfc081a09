"""
Identity resolution for the listing portal.

Role and account status lookups are read-only and cached: roles for the
lifetime of a session, statuses for at most STATUS_CACHE_TTL_SECONDS.
Every cache is bounded by IDENTITY_CACHE_MAX_ENTRIES, least recently used
entries go first.
"""

import boto3
import os
import time
import uuid
from botocore.exceptions import BotoCoreError, ClientError
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Protocol, Tuple, TypeVar
from aws_lambda_powertools import Logger

from portal_core.models.entitlement import AccountStatus, Role, Session
from portal_core.models.errors import IdentityNotFound
from portal_core.services.aws import get_region_name, persistence_failure
from portal_core.services.user_service import UserService
from portal_core.utils.auth import session_from_event

logger = Logger()

DEFAULT_STATUS_CACHE_TTL_SECONDS = 5.0
DEFAULT_CACHE_MAX_ENTRIES = 1024

V = TypeVar("V")


def cache_max_entries() -> int:
    return int(os.environ.get("IDENTITY_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES))


class BoundedCache(Generic[V]):
    """LRU cache whose entries may also carry an expiry on the cache's clock"""

    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries if max_entries is not None else cache_max_entries()
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[Optional[float], V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def put(self, key: Hashable, value: V, expires_at: Optional[float] = None) -> None:
        if self.max_entries <= 0:
            return
        self._entries[key] = (expires_at, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def discard(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def discard_where(self, predicate: Callable[[Hashable], bool]) -> None:
        for key in [key for key in self._entries if predicate(key)]:
            del self._entries[key]


def session_expiry(session: Session) -> Optional[float]:
    return session.expires_at.timestamp() if session.expires_at else None


class RoleResolver:
    """Resolves a user's role; answers are cached per session until sign-out or token expiry"""

    def __init__(
        self,
        users: Optional[UserService] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.users = users or UserService()
        self._cache: BoundedCache[Role] = BoundedCache(max_entries, clock)

    def resolve_role(self, user_id: str, session: Optional[Session] = None) -> Role:
        """
        Get the role granted to `user_id`.

        Raises:
            IdentityNotFound: the user has no role grant
            PersistenceFailure: the role store failed
        """
        key = (session.session_id, user_id) if session else None
        if key:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        role = self.users.get_role(user_id)
        if role is None:
            raise IdentityNotFound(user_id, f"No role granted to user {user_id}")
        if key:
            self._cache.put(key, role, session_expiry(session))
        return role

    def invalidate(self, session: Session) -> None:
        """Forget every role cached under the session."""
        self._cache.discard_where(lambda key: key[0] == session.session_id)


class AccountStatusResolver:
    """Resolves an agent's lifecycle status; administrators have none"""

    def __init__(
        self,
        users: Optional[UserService] = None,
        roles: Optional[RoleResolver] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self.users = users or UserService()
        self.roles = roles or RoleResolver(self.users)
        if ttl_seconds is None:
            ttl_seconds = float(
                os.environ.get("STATUS_CACHE_TTL_SECONDS", DEFAULT_STATUS_CACHE_TTL_SECONDS)
            )
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: BoundedCache[AccountStatus] = BoundedCache(max_entries, clock)

    def resolve_status(self, user_id: str, session: Optional[Session] = None) -> Optional[AccountStatus]:
        """
        Get the account status of `user_id`, None for administrators.

        A cached answer is at most `ttl_seconds` old.

        Raises:
            IdentityNotFound: the user has no role grant, or is an agent without a profile
            PersistenceFailure: a store read failed
        """
        if self.roles.resolve_role(user_id, session) == Role.ADMINISTRATOR:
            return None

        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        profile = self.users.get_profile(user_id)
        if profile is None:
            raise IdentityNotFound(user_id, f"No agent profile for user {user_id}")
        self._cache.put(user_id, profile.status, self._clock() + self.ttl_seconds)
        return profile.status

    def invalidate(self, user_id: str) -> None:
        self._cache.discard(user_id)


class SessionManager:
    """Owns the lifecycle of sessions and of the caches scoped to them"""

    def __init__(
        self,
        roles: Optional[RoleResolver] = None,
        statuses: Optional[AccountStatusResolver] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.roles = roles or RoleResolver()
        self.statuses = statuses or AccountStatusResolver(self.roles.users, self.roles)
        self._active: BoundedCache[Session] = BoundedCache(max_entries, clock)

    def sign_in(self, session: Session) -> Session:
        """
        Register a freshly authenticated session and warm its role cache.

        Raises:
            IdentityNotFound: the identity has no role grant
        """
        self.roles.resolve_role(session.user_id, session)
        self._active.put(session.session_id, session, session_expiry(session))
        logger.info(f"Session {session.session_id} signed in for user {session.user_id}")
        return session

    def sign_out(self, session: Session) -> None:
        self.roles.invalidate(session)
        self.statuses.invalidate(session.user_id)
        self._active.discard(session.session_id)
        logger.info(f"Session {session.session_id} signed out for user {session.user_id}")

    def is_active(self, session: Session) -> bool:
        return session.session_id in self._active


class IdentityProvider(Protocol):
    """Identity and session provider the engine consumes"""

    def get_current_session(self, event: Dict[str, Any]) -> Optional[Session]:
        ...

    def verify_credentials(self, email: str, password: str) -> Optional[Session]:
        ...


class CognitoIdentityProvider:
    """IdentityProvider backed by a Cognito user pool app client"""

    def __init__(self, client_id: Optional[str] = None, client: Optional[Any] = None):
        self.client_id = client_id or os.environ.get("COGNITO_CLIENT_ID", "")
        self._client = client

    @property
    def client(self):
        """Lazy initialization of the cognito-idp client"""
        if self._client is None:
            self._client = boto3.client("cognito-idp", region_name=get_region_name())
        return self._client

    def get_current_session(self, event: Dict[str, Any]) -> Optional[Session]:
        return session_from_event(event)

    def verify_credentials(self, email: str, password: str) -> Optional[Session]:
        """
        Check an email/password pair with the USER_PASSWORD_AUTH flow.

        Returns:
            Session for the authenticated user, None when the credentials are rejected

        Raises:
            PersistenceFailure: Cognito could not be reached or failed unexpectedly
        """
        try:
            response = self.client.initiate_auth(
                ClientId=self.client_id,
                AuthFlow="USER_PASSWORD_AUTH",
                AuthParameters={"USERNAME": email, "PASSWORD": password},
            )
            tokens = response.get("AuthenticationResult")
            if not tokens:
                # A challenge (new password, MFA) is pending; not signed in yet
                logger.info(f"Sign-in for {email} requires challenge {response.get('ChallengeName')}")
                return None
            user = self.client.get_user(AccessToken=tokens["AccessToken"])
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NotAuthorizedException", "UserNotFoundException"):
                logger.info(f"Credentials rejected for {email}")
                return None
            raise persistence_failure(e, f"verifying credentials for {email}") from e
        except BotoCoreError as e:
            raise persistence_failure(e, f"verifying credentials for {email}") from e

        attributes = {attr["Name"]: attr["Value"] for attr in user.get("UserAttributes", [])}
        return Session(
            session_id=str(uuid.uuid4()),
            user_id=attributes.get("sub", user["Username"]),
            email=attributes.get("email", email),
            issued_at=datetime.now(timezone.utc),
        )
