import argparse
import runpy
from pathlib import Path

import pytest

from knowledgecenter.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def script():
    return runpy.run_path(str(SCRIPT))


def test_password_strength(script):
    assert script["password_is_strong"]("Secure-Passw0rd") is True
    assert script["password_is_strong"]("short-Pw1") is False
    assert script["password_is_strong"]("alllowercaseletters") is False


def test_parse_rule(script):
    assert script["parse_rule"]("GET /users admin,user") == ("GET", "/users", ["admin", "user"])
    with pytest.raises(argparse.ArgumentTypeError):
        script["parse_rule"]("GET /users")
    with pytest.raises(argparse.ArgumentTypeError):
        script["parse_rule"]("GET users admin")


async def test_provision_creates_superuser_and_rules(script):
    summary = await script["provision"](
        "root@x.io",
        "Secure-Passw0rd",
        "Root",
        [("GET", "/users", ["admin", "user"]), ("*", "/reports", ["auditor"])],
    )

    store = get_runtime().store
    user = store.get_user_by_email("root@x.io")
    assert summary["account"] == "create"
    assert summary["user_id"] == user.public_id
    assert "full_access" in store.get_effective_roles(user.id)
    assert summary["rules_added"] == 2
    assert len(store.list_permission_rules()) == 2


async def test_provision_promotes_existing_user_once(script):
    store = get_runtime().store
    user = store.create_user("ops", "ops@x.io", {"en-US": "Ops"}, "hash")

    first = await script["provision"]("ops@x.io", "Secure-Passw0rd", "Ops", [])
    second = await script["provision"]("ops@x.io", "Secure-Passw0rd", "Ops", [])

    assert first["account"] == "promote"
    assert second["account"] == "unchanged"
    assert store.get_effective_roles(user.id) == ["full_access"]


async def test_provision_skips_existing_rules(script):
    get_runtime().store.add_permission_rule("POST", "/users", ["admin"])

    summary = await script["provision"](
        "root@x.io", "Secure-Passw0rd", "Root", [("post", "/users", ["admin"])]
    )

    assert summary["rules_added"] == 0


async def test_dry_run_writes_nothing(script):
    summary = await script["provision"](
        "root@x.io", "Secure-Passw0rd", "Root", [("GET", "/users", ["admin"])], dry_run=True
    )

    store = get_runtime().store
    assert summary["account"] == "create"
    assert summary["rules_added"] == 1
    assert store.get_user_by_email("root@x.io") is None
    assert store.list_permission_rules() == []
