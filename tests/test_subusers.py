"""Tests for the subuser (delegate account) model."""

import pytest

from accounts import AccountService
from conftest import interleave
from errors import Conflict, NotFound, QuotaExceeded, ValidationError
from models import PLACEHOLDER_EMAIL_DOMAIN, Role, account_view
from security import verify_password
from subusers import SubuserService, normalize_phone


# ============================================================================
# Phone normalization
# ============================================================================


@pytest.mark.parametrize("raw,expected", [
    ("38 945-6321", "0389456321"),
    ("0389456321", "0389456321"),
    ("912345678", "0912345678"),
    ("(091) 234-5678", "0912345678"),
    ("+84 912 345 678", "84912345678"),
    ("12345", "12345"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["38 945-6321", "0389456321", "+84 912 345 678", "12345"])
def test_normalize_phone_is_idempotent(raw):
    once = normalize_phone(raw)
    assert normalize_phone(once) == once


# ============================================================================
# Create-or-update
# ============================================================================


def test_create_delegate_stores_normalized_phone(subusers, parent):
    delegate, created = subusers.create_delegate(parent.id, "912-345-678", "pw", "Ba")

    assert created is True
    assert delegate.role == Role.delegate
    assert delegate.numberphone == "0912345678"
    assert delegate.created_by == parent.id
    assert delegate.relationship == "unknown"
    assert delegate.email.endswith("@" + PLACEHOLDER_EMAIL_DOMAIN)
    assert verify_password("pw", delegate.password_hash)


def test_same_phone_updates_existing_delegate(subusers, parent):
    first, created_first = subusers.create_delegate(parent.id, "0912345678", "pw", "Ba")
    second, created_second = subusers.create_delegate(parent.id, "912345678", "pw2", "Ba2")

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    assert second.fullname == "Ba2"
    assert verify_password("pw2", second.password_hash)
    assert not verify_password("pw", second.password_hash)
    assert len(subusers.list_delegates(parent.id)) == 1


def test_update_keeps_fields_that_were_not_sent(subusers, parent):
    subusers.create_delegate(parent.id, "0912345678", "pw", "Ba", image="/uploads/a.png", relationship="father")
    updated, _ = subusers.create_delegate(parent.id, "0912345678", "pw2")

    assert updated.fullname == "Ba"
    assert updated.image == "/uploads/a.png"
    assert updated.relationship == "father"


def test_same_phone_under_two_owners_creates_two_rows(accounts, subusers, parent):
    other = accounts.register_primary("other@example.com", "pw")
    a, _ = subusers.create_delegate(parent.id, "0912345678", "pw")
    b, created = subusers.create_delegate(other.id, "0912345678", "pw")

    assert created is True
    assert a.id != b.id


def test_quota_rejects_eleventh_delegate(subusers, parent):
    for i in range(10):
        subusers.create_delegate(parent.id, f"09000000{i:02d}", "pw")

    with pytest.raises(QuotaExceeded) as exc_info:
        subusers.create_delegate(parent.id, "0999999999", "pw")

    assert isinstance(exc_info.value, Conflict)
    assert exc_info.value.status_code == 409
    assert len(subusers.list_delegates(parent.id)) == 10


def test_quota_does_not_block_updates(subusers, parent):
    for i in range(10):
        subusers.create_delegate(parent.id, f"09000000{i:02d}", "pw")

    updated, created = subusers.create_delegate(parent.id, "0900000003", "new-pw", "Renamed")

    assert created is False
    assert updated.fullname == "Renamed"


def test_deleting_frees_quota(subusers, parent):
    ids = [subusers.create_delegate(parent.id, f"09000000{i:02d}", "pw")[0].id for i in range(10)]
    subusers.delete_delegate(ids[0], parent.id)

    _, created = subusers.create_delegate(parent.id, "0999999999", "pw")

    assert created is True


def test_owner_tracks_live_delegate_count(accounts, subusers, parent):
    ids = [subusers.create_delegate(parent.id, f"09000000{i:02d}", "pw")[0].id for i in range(3)]
    subusers.create_delegate(parent.id, "0900000001", "pw2")
    subusers.delete_delegate(ids[0], parent.id)

    assert accounts.get_account(parent.id).subuser_count == 2


def test_concurrent_creates_cannot_exceed_quota(file_db, settings):
    accounts = AccountService(file_db, settings)
    subusers = SubuserService(file_db, settings)
    owner = accounts.register_primary("parent@example.com", "pw")
    for i in range(9):
        subusers.create_delegate(owner.id, f"09000000{i:02d}", "pw")

    # Both creates have passed their reads before either claims the last slot.
    def racing_create():
        return subusers.create_delegate(owner.id, "0911111111", "pw")

    with interleave(file_db.engine, "UPDATE accounts", racing_create) as other:
        with pytest.raises(QuotaExceeded):
            subusers.create_delegate(owner.id, "0922222222", "pw")

    assert "error" not in other
    assert other["result"][1] is True
    assert len(subusers.list_delegates(owner.id)) == 10
    assert accounts.get_account(owner.id).subuser_count == 10


@pytest.mark.parametrize("phone,password", [("", "pw"), ("0912345678", ""), ("abc", "pw")])
def test_create_delegate_requires_phone_and_password(subusers, parent, phone, password):
    with pytest.raises(ValidationError):
        subusers.create_delegate(parent.id, phone, password)


def test_owner_must_be_primary(accounts, subusers, parent):
    delegate, _ = subusers.create_delegate(parent.id, "0912345678", "pw")

    with pytest.raises(ValidationError):
        subusers.create_delegate(delegate.id, "0987654321", "pw")
    with pytest.raises(ValidationError):
        subusers.create_delegate("missing-owner", "0987654321", "pw")


# ============================================================================
# Read / delete
# ============================================================================


def test_get_delegate_checks_owner(accounts, subusers, parent):
    other = accounts.register_primary("other@example.com", "pw")
    delegate, _ = subusers.create_delegate(parent.id, "0912345678", "pw")

    assert subusers.get_delegate(delegate.id, parent.id).id == delegate.id
    with pytest.raises(NotFound):
        subusers.get_delegate(delegate.id, other.id)


def test_delete_delegate(subusers, parent):
    delegate, _ = subusers.create_delegate(parent.id, "0912345678", "pw")

    subusers.delete_delegate(delegate.id, parent.id)

    assert subusers.list_delegates(parent.id) == []
    with pytest.raises(NotFound):
        subusers.delete_delegate(delegate.id, parent.id)


def test_delete_refuses_non_delegates_and_foreign_owners(accounts, subusers, parent):
    other = accounts.register_primary("other@example.com", "pw")
    delegate, _ = subusers.create_delegate(parent.id, "0912345678", "pw")

    with pytest.raises(NotFound):
        subusers.delete_delegate(parent.id)
    with pytest.raises(NotFound):
        subusers.delete_delegate(delegate.id, other.id)
    assert len(subusers.list_delegates(parent.id)) == 1


def test_delegate_view_hides_secrets(subusers, parent):
    delegate, _ = subusers.create_delegate(parent.id, "0912345678", "pw", "Ba")

    data = account_view(delegate).model_dump(mode='json')

    assert data["role"] == "delegate"
    assert data["numberphone"] == "0912345678"
    assert data["created_by"] == parent.id
    assert "password_hash" not in data
    assert "email" not in data
