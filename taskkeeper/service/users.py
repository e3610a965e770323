from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from taskkeeper.logging import get_logger
from taskkeeper.service.attachments import AvatarPolicy, sniff_media_type
from taskkeeper.service.auth import AuthContext, SessionTokenManager
from taskkeeper.service.credentials import CredentialStore
from taskkeeper.service.errors import (
    AuthenticationError,
    DuplicateEmail,
    NotFoundError,
    ValidationError,
)
from taskkeeper.service.notifications import Notifier
from taskkeeper.service.tasks import TaskService
from taskkeeper.service.validation import (
    validate_email,
    validate_fields,
    validate_name,
    validate_password,
)
from taskkeeper.storage.errors import ConstraintViolation
from taskkeeper.storage.models import User

logger = get_logger(__name__)

_PROFILE_VALIDATORS = {
    "name": validate_name,
    "email": validate_email,
    "password": validate_password,
}


class UserStore(Protocol):
    def create_user(self, name: str, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def set_avatar(self, user_id: str, avatar: Optional[bytes]) -> bool: ...

    def get_avatar(self, user_id: str) -> Optional[bytes]: ...


def _duplicate_email() -> DuplicateEmail:
    return DuplicateEmail(
        "email already in use", detail={"fields": {"email": "already in use"}}
    )


class UserService:
    """User lifecycle: signup, login/logout, profile edits and account removal."""

    def __init__(
        self,
        store: UserStore,
        credentials: CredentialStore,
        tokens: SessionTokenManager,
        tasks: TaskService,
        notifier: Notifier,
        *,
        avatar_policy: Optional[AvatarPolicy] = None,
        revoke_sessions_on_password_change: bool = True,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.tasks = tasks
        self.notifier = notifier
        self.avatar_policy = avatar_policy or AvatarPolicy()
        self.revoke_sessions_on_password_change = revoke_sessions_on_password_change

    async def sign_up(self, name: Any, email: Any, password: Any) -> Tuple[User, str]:
        cleaned = validate_fields(
            {"name": name, "email": email, "password": password}, _PROFILE_VALIDATORS
        )
        if self.store.get_user_by_email(cleaned["email"]):
            raise _duplicate_email()
        try:
            user = self.store.create_user(cleaned["name"], cleaned["email"])
        except ConstraintViolation as exc:
            # lost a race with a concurrent signup
            raise _duplicate_email() from exc
        self.credentials.set_password(user.id, cleaned["password"])
        token = await self.tokens.issue(user.id)
        self.notifier.notify_welcome(user.email, user.name)
        logger.info("user_signed_up", user_id=user.id)
        return self.get_profile(user.id), token

    async def login(self, email: Any, password: Any) -> Tuple[User, str]:
        """Authenticate by email and password and open a new session.

        Every failure raises the same ``AuthenticationError`` so callers
        cannot tell a wrong password from an unknown account.
        """
        failure = AuthenticationError("unable to login")
        try:
            normalized = validate_email(email)
        except ValueError:
            raise failure from None
        if not isinstance(password, str):
            raise failure
        user = self.store.get_user_by_email(normalized)
        if not user or not self.credentials.check_password(user.id, password.strip()):
            logger.info("login_failed")
            raise failure
        token = await self.tokens.issue(user.id)
        logger.info("user_logged_in", user_id=user.id)
        return self.get_profile(user.id), token

    async def logout(self, ctx: AuthContext) -> None:
        await self.tokens.revoke(ctx.user_id, ctx.token)

    async def logout_all(self, user_id: str) -> int:
        return await self.tokens.revoke_all(user_id)

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def update_profile(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        current_token: Optional[str] = None,
    ) -> User:
        if not isinstance(fields, Mapping):
            raise ValidationError("update body must be an object")
        cleaned = validate_fields(fields, _PROFILE_VALIDATORS)
        user = self.get_profile(user_id)
        password = cleaned.pop("password", None)
        if "email" in cleaned:
            if cleaned["email"] == user.email:
                cleaned.pop("email")
            else:
                other = self.store.get_user_by_email(cleaned["email"])
                if other and other.id != user_id:
                    raise _duplicate_email()
        if cleaned:
            try:
                updated = self.store.update_user(user_id, cleaned)
            except ConstraintViolation as exc:
                raise _duplicate_email() from exc
            if not updated:
                raise NotFoundError("user not found", detail={"user_id": user_id})
        if password is not None:
            if self.revoke_sessions_on_password_change:
                await self.tokens.revoke_all(user_id, except_token=current_token)
            self.credentials.set_password(user_id, password)
        changed = sorted(cleaned) + (["password"] if password is not None else [])
        logger.info("user_profile_updated", user_id=user_id, fields=changed)
        return self.get_profile(user_id)

    async def delete_account(self, user_id: str) -> User:
        """Remove a user with their tasks and sessions, then send the goodbye email.

        The steps run one after another without a transaction; a crash part
        way through can leave orphaned tasks behind.
        """
        user = self.get_profile(user_id)
        await self.tokens.revoke_all(user_id)
        self.tasks.delete_all_for_owner(user_id)
        self.store.delete_user(user_id)
        self.notifier.notify_removed(user.email, user.name)
        logger.info("user_deleted", user_id=user_id)
        return user

    def set_avatar(self, user_id: str, filename: Optional[str], content: bytes) -> str:
        media_type = self.avatar_policy.check(filename, content)
        if not self.store.set_avatar(user_id, content):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("avatar_updated", user_id=user_id, size=len(content))
        return media_type

    def clear_avatar(self, user_id: str) -> None:
        if not self.store.set_avatar(user_id, None):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("avatar_cleared", user_id=user_id)

    def get_avatar(self, user_id: str) -> Tuple[bytes, str]:
        content = self.store.get_avatar(user_id)
        if not content:
            raise NotFoundError("avatar not found", detail={"user_id": user_id})
        return content, sniff_media_type(content) or "application/octet-stream"
