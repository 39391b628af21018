"""
auth/profile.py -- Profile detail editing.

Only names, email and phone number change here. Passwords go through
auth/password_reset.py; roles are never edited by the principal.
"""

from __future__ import annotations

import logging

from auth.errors import DuplicateCredentialError, PrincipalNotFoundError
from auth.models import Admin, DetailsUpdate, PrincipalKind, User
from auth.protocols import CredentialStore

logger = logging.getLogger("keyward.auth")

DETAILS_UPDATED = "User details updated successfully"


class ProfileFlow:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def edit_details(self, username: str, update: DetailsUpdate, kind: PrincipalKind = PrincipalKind.ADMIN) -> str:
        principal = self._store.find_by_username(kind, username)
        if principal is None:
            raise PrincipalNotFoundError("User not found")

        if update.email != principal.email:
            other = self._store.find_by_email(kind, update.email)
            if other is not None and other.id != principal.id:
                raise DuplicateCredentialError("Email already exists.")

        principal.email = update.email
        principal.phone_number = update.phone_number
        if isinstance(principal, Admin):
            if update.first_name is not None:
                principal.first_name = update.first_name
            if update.last_name is not None:
                principal.last_name = update.last_name
        elif isinstance(principal, User) and update.full_name is not None:
            principal.full_name = update.full_name

        self._store.save(principal)
        logger.info("Updated details for %s %s", kind.value, username)
        return DETAILS_UPDATED
