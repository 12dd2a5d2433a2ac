import importlib.util
import sys
from pathlib import Path

import pytest

from recipeshare.service.runtime import get_runtime
from recipeshare.storage.models import Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_users.py"


@pytest.fixture
def seed_module(monkeypatch):
    spec = importlib.util.spec_from_file_location("seed_users", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    monkeypatch.setitem(sys.modules, spec.name, module)
    spec.loader.exec_module(module)
    return module


def test_seed_creates_one_account_per_role(seed_module):
    runtime = get_runtime()

    results = seed_module.seed_users(seed_module.default_accounts(), runtime=runtime)

    assert [r["status"] for r in results] == ["created"] * 3
    roles = {u.email: u.role for u in runtime.store.list_users()}
    assert roles == {
        "admin@example.com": Role.ADMIN,
        "editor@example.com": Role.EDITOR,
        "user@example.com": Role.USER,
    }
    admin = runtime.store.get_user_by_email("admin@example.com")
    assert runtime.auth.verify_password(admin.id, "Admin123!") is True


def test_seed_is_idempotent(seed_module):
    runtime = get_runtime()
    seed_module.seed_users(seed_module.default_accounts(), runtime=runtime)

    again = seed_module.seed_users(seed_module.default_accounts(), runtime=runtime)

    assert [r["status"] for r in again] == ["exists"] * 3
    assert len(runtime.store.list_users()) == 3


def test_dry_run_changes_nothing(seed_module):
    runtime = get_runtime()

    results = seed_module.seed_users(
        seed_module.default_accounts(), runtime=runtime, dry_run=True
    )

    assert [r["status"] for r in results] == ["dry_run"] * 3
    assert runtime.store.list_users() == []


def test_custom_passwords_override_defaults(seed_module):
    accounts = seed_module.default_accounts(admin_password="Another-Pass-1")

    assert accounts[0].password == "Another-Pass-1"
    assert accounts[1].password == "Editor123!"
