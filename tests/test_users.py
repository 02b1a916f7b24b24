import importlib.util
from pathlib import Path

import pytest

from trafficsafety.service.errors import ValidationError
from trafficsafety.service.runtime import get_runtime
from trafficsafety.service.users import PASSWORD_ALGO, UserDirectory, normalize_email
from trafficsafety.storage.errors import ConstraintViolation

SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "create_user.py"


@pytest.fixture
def users(store, clock):
    return UserDirectory(store, clock)


def _load_script():
    spec = importlib.util.spec_from_file_location("create_user_script", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_normalize_email():
    assert normalize_email("  Mixed@Example.COM ") == "mixed@example.com"
    assert normalize_email(None) == ""


def test_create_user_hashes_with_argon2id(users, store):
    user = users.create_user("New@Example.com", "pw-123456", role="Manager")

    assert user.email == "new@example.com"
    assert user.role == "manager"
    password_hash, algo = store.get_password_record(user.id)
    assert algo == PASSWORD_ALGO
    assert password_hash.startswith("$argon2id$")
    assert "pw-123456" not in password_hash


@pytest.mark.parametrize(
    "email, password, role, field",
    [
        ("not-an-email", "pw", "viewer", "email"),
        ("a@example.com", "", "viewer", "password"),
        ("a@example.com", "pw", "superuser", "role"),
    ],
)
def test_create_user_validation(users, email, password, role, field):
    with pytest.raises(ValidationError) as exc:
        users.create_user(email, password, role=role)
    assert exc.value.detail["field"] == field


def test_create_user_duplicate_email(users):
    users.create_user("twice@example.com", "pw")
    with pytest.raises(ConstraintViolation):
        users.create_user("TWICE@example.com", "pw")


def test_verify_password(users):
    user = users.create_user("verify@example.com", "right-password")

    assert users.verify_password(user, "right-password") is True
    assert users.verify_password(user, "wrong-password") is False
    assert users.verify_password(None, "right-password") is False


def test_verify_password_without_credentials(users, store):
    user = store.create_user("nocreds@example.com")
    assert users.verify_password(user, "anything") is False


def test_verify_password_rejects_unknown_algorithm(users, store):
    user = users.create_user("legacy@example.com", "pw")
    store.save_password(user.id, "plain", "md5")
    assert users.verify_password(user, "pw") is False


def test_find_by_email_normalizes(users):
    created = users.create_user("find@example.com", "pw")
    assert users.find_by_email(" FIND@example.com ").id == created.id
    assert users.find_by_email("") is None


def test_record_login_uses_clock(users, clock):
    user = users.create_user("clock@example.com", "pw")
    clock.advance(minutes=5)

    at = users.record_login(user.id)

    assert at == clock.now()
    assert users.find_by_id(user.id).last_login_at == clock.now()


class TestCreateUserScript:
    def test_password_complexity(self):
        script = _load_script()
        assert script.validate_password("Str0ng-Passw0rd")
        assert not script.validate_password("short1A!")
        assert not script.validate_password("alllowercaseletters")

    def test_create_then_update_role(self):
        script = _load_script()

        created = script.create_user("ops@example.com", "Str0ng-Passw0rd", "analyst")
        assert created["status"] == "created"

        again = script.create_user("ops@example.com", "Str0ng-Passw0rd", "analyst")
        assert again["status"] == "unchanged"

        preview = script.create_user("ops@example.com", "Str0ng-Passw0rd", "admin", dry_run=True)
        assert preview["status"] == "dry_run"
        assert get_runtime().users.find_by_email("ops@example.com").role == "analyst"

        updated = script.create_user("ops@example.com", "Str0ng-Passw0rd", "admin")
        assert updated["status"] == "updated"
        assert get_runtime().users.find_by_email("ops@example.com").role == "admin"

    def test_dry_run_for_new_user_creates_nothing(self):
        script = _load_script()
        result = script.create_user("ghost@example.com", "Str0ng-Passw0rd", "viewer", dry_run=True)
        assert result == {"user_id": None, "email": "ghost@example.com", "role": "viewer", "status": "dry_run"}
        assert get_runtime().users.find_by_email("ghost@example.com") is None
