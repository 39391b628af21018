"""Unit tests for auth/profile.py -- ProfileFlow.edit_details().

Covers:
- Admin names, email and phone are updated; password and roles untouched
- User full_name is updated
- Taking another principal's email raises DuplicateCredentialError
- Unknown username raises PrincipalNotFoundError
"""

from __future__ import annotations

import pytest

from auth.errors import DuplicateCredentialError, PrincipalNotFoundError
from auth.models import DetailsUpdate, PrincipalKind
from auth.profile import DETAILS_UPDATED


def test_admin_details_updated(services, confirmed_admin):
    message = services.profile.edit_details(
        "alice",
        DetailsUpdate(email="alice@new.com", phone_number="+1999", first_name="Alicia"),
    )
    assert message == DETAILS_UPDATED

    admin = services.store.find_by_username(PrincipalKind.ADMIN, "alice")
    assert admin.email == "alice@new.com"
    assert admin.phone_number == "+1999"
    assert admin.first_name == "Alicia"
    assert admin.last_name == "Admin"
    assert admin.hashed_password == confirmed_admin.hashed_password
    assert admin.role_names == ["ADMIN"]
    assert admin.enabled is True


def test_same_email_is_fine(services, confirmed_admin):
    services.profile.edit_details("alice", DetailsUpdate(email="alice@x.com", phone_number=None))
    assert services.store.find_by_username(PrincipalKind.ADMIN, "alice").phone_number is None


def test_user_full_name(services, confirmed_admin, user_form):
    services.registration.register_user("alice", user_form())
    services.profile.edit_details("eve", DetailsUpdate(email="eve@x.com", full_name="Eve E. Employee"), PrincipalKind.USER)
    user = services.store.find_by_username(PrincipalKind.USER, "eve")
    assert user.full_name == "Eve E. Employee"
    assert user.created_under == confirmed_admin.id


def test_email_collision(services, confirmed_admin, admin_form):
    services.registration.register_admin(admin_form(username="bob", email="bob@x.com"))
    with pytest.raises(DuplicateCredentialError):
        services.profile.edit_details("alice", DetailsUpdate(email="bob@x.com"))
    assert services.store.find_by_username(PrincipalKind.ADMIN, "alice").email == "alice@x.com"


def test_unknown_principal(services):
    with pytest.raises(PrincipalNotFoundError):
        services.profile.edit_details("ghost", DetailsUpdate(email="ghost@x.com"))
