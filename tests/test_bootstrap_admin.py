import importlib.util
from pathlib import Path

import pytest

from laos.service.runtime import get_runtime
from laos.storage.models import Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_admin(bootstrap):
    result = bootstrap("admin", "pw1", "admin@example.com")

    assert result["status"] == "created"
    account = get_runtime().store.find_by_id(result["account_id"])
    assert account.role == Role.ADMIN
    assert account.nickname == "admin"
    assert get_runtime().accounts.login("admin", "pw1") is not None


def test_promotes_existing_account(bootstrap):
    account = get_runtime().accounts.register(local_id="alice", password="pw1", nickname="a")

    result = bootstrap("alice", None, None)

    assert result == {"account_id": account.id, "local_id": "alice", "status": "promoted"}
    assert get_runtime().store.find_by_id(account.id).role == Role.ADMIN


def test_already_admin_is_a_no_op(bootstrap):
    bootstrap("admin", "pw1", "admin@example.com")
    assert bootstrap("admin", None, None)["status"] == "already_admin"


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap("admin", "pw1", "admin@example.com", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.find_by_local_id("admin") is None


def test_new_admin_needs_password_and_email(bootstrap):
    with pytest.raises(ValueError):
        bootstrap("admin", None, "admin@example.com")
