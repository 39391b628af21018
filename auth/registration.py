"""
auth/registration.py -- Admin self-registration, user provisioning, account confirmation.

Admin path: the new admin is stored disabled, a CONFIRMATION token is issued
and the confirmation link is emailed. The account becomes usable once
confirm_account() consumes that token.

User path: an existing admin provisions the account. Users are stored enabled
(the admin vouches for them) with created_under pointing at the admin, and
receive an activation email with their credentials and the login URL.

Duplicate checks run before anything is written. A concurrent registration
that slips between the check and the insert is still caught by the UNIQUE
constraints, which AuthStore.save() turns into DuplicateCredentialError.
"""

from __future__ import annotations

import logging

from auth.errors import DuplicateCredentialError, PrincipalNotFoundError, RoleNotConfiguredError
from auth.ledgers import ConfirmationTokenLedger
from auth.models import (
    Admin,
    AdminRegistration,
    ConfirmationReceipt,
    PrincipalKind,
    ProvisioningReceipt,
    Role,
    TokenPurpose,
    User,
    UserRegistration,
)
from auth.notifier import deliver, render_message
from auth.protocols import CredentialStore, Hasher, Notifier, RoleCatalog

logger = logging.getLogger("keyward.auth")

ADMIN_ROLE = "ADMIN"
USER_ROLE = "USER"

REGISTERED = "Registration successful. Check your email to confirm your account."
PROVISIONED = "User created successfully."
CONFIRMED = "Account confirmed."
ALREADY_CONFIRMED = "Account already confirmed."


def confirmation_link(base_url: str, token_value: str) -> str:
    return f"{base_url}/confirm?token={token_value}"


class RegistrationFlow:
    def __init__(
        self,
        store: CredentialStore,
        roles: RoleCatalog,
        hasher: Hasher,
        confirmations: ConfirmationTokenLedger,
        notifier: Notifier,
        base_url: str,
    ) -> None:
        self._store = store
        self._roles = roles
        self._hasher = hasher
        self._confirmations = confirmations
        self._notifier = notifier
        self.base_url = base_url.rstrip("/")

    def register_admin(self, request: AdminRegistration) -> ConfirmationReceipt:
        self._ensure_unique(PrincipalKind.ADMIN, request.username, request.email)
        role = self._require_role(ADMIN_ROLE)

        admin = self._store.save(
            Admin(
                username=request.username,
                email=request.email,
                hashed_password=self._hasher.hash(request.password),
                first_name=request.first_name,
                last_name=request.last_name,
                phone_number=request.phone_number,
                roles=frozenset({role}),
                enabled=False,
            )
        )
        token = self._confirmations.issue(admin, TokenPurpose.CONFIRMATION)
        logger.info("Registered admin %s (id=%s), awaiting confirmation", admin.username, admin.id)

        body = render_message(
            "account_created.txt",
            first_name=admin.first_name,
            last_name=admin.last_name,
            confirmation_url=confirmation_link(self.base_url, token.token),
            expires_minutes=int(self._confirmations.ttl.total_seconds() // 60),
        )
        notified = deliver(self._notifier, admin.email, "Account creation successful", body)

        return ConfirmationReceipt(
            username=admin.username,
            email=admin.email,
            first_name=admin.first_name,
            last_name=admin.last_name,
            phone_number=admin.phone_number,
            status=REGISTERED,
            notified=notified,
        )

    def register_user(self, acting_admin_username: str, request: UserRegistration) -> ProvisioningReceipt:
        admin = self._store.find_by_username(PrincipalKind.ADMIN, acting_admin_username)
        if admin is None:
            raise PrincipalNotFoundError(f"Admin {acting_admin_username!r} not found.")
        self._ensure_unique(PrincipalKind.USER, request.username, request.email)
        role = self._require_role(USER_ROLE)

        user = self._store.save(
            User(
                username=request.username,
                email=request.email,
                hashed_password=self._hasher.hash(request.password),
                full_name=request.full_name,
                phone_number=request.phone_number,
                job_title=request.job_title,
                department=request.department,
                created_under=admin.id,
                roles=frozenset({role}),
                enabled=True,
            )
        )
        logger.info("Admin %s provisioned user %s (id=%s)", admin.username, user.username, user.id)

        body = render_message(
            "user_activation.txt",
            full_name=user.full_name,
            username=user.username,
            password=request.password,
            login_url=f"{self.base_url}/user-login",
        )
        notified = deliver(self._notifier, user.email, "Activate your account", body)

        return ProvisioningReceipt(
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            phone_number=user.phone_number,
            job_title=user.job_title,
            department=user.department,
            created_under=admin.id,
            status=PROVISIONED,
            notified=notified,
        )

    def list_users(self, acting_admin_username: str) -> list[User]:
        """Users provisioned by the acting admin, ordered by username. Other admins' users are never returned."""
        admin = self._store.find_by_username(PrincipalKind.ADMIN, acting_admin_username)
        if admin is None:
            raise PrincipalNotFoundError(f"Admin {acting_admin_username!r} not found.")
        return self._store.list_users_created_under(admin.id)

    def confirm_account(self, token_value: str) -> str:
        """Enable the account bound to a CONFIRMATION token.

        Presenting an already used token for an account that is already
        enabled is a no-op that reports ALREADY_CONFIRMED. Unknown, expired,
        wrong-purpose, or used-but-not-enabled tokens raise
        InvalidOrExpiredTokenError via the ledger.
        """
        existing = self._confirmations.lookup(token_value)
        if existing is not None and existing.consumed and existing.purpose is TokenPurpose.CONFIRMATION:
            owner = self._store.find_by_id(existing.principal_kind, existing.principal_id)
            if owner is not None and owner.enabled:
                return ALREADY_CONFIRMED

        principal = self._confirmations.consume(token_value, TokenPurpose.CONFIRMATION)
        with self._store.transaction() as conn:
            if not self._confirmations.mark_consumed(token_value, conn=conn):
                # A concurrent request claimed the token first and is enabling the account.
                return ALREADY_CONFIRMED
            if not principal.enabled:
                principal.enabled = True
                self._store.save(principal, conn=conn)
        logger.info("Confirmed %s %s", principal.kind.value, principal.username)
        return CONFIRMED

    def _ensure_unique(self, kind: PrincipalKind, username: str, email: str) -> None:
        if self._store.find_by_username(kind, username) is not None:
            raise DuplicateCredentialError("Username already exists. Please choose another username.")
        if self._store.find_by_email(kind, email) is not None:
            raise DuplicateCredentialError("Email already exists. Login to your account.")

    def _require_role(self, name: str) -> Role:
        role = self._roles.find_by_name(name)
        if role is None:
            raise RoleNotConfiguredError(f"Default role {name} not found in the role catalog.")
        return role
