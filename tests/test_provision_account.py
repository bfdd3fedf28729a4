import importlib.util
from pathlib import Path

import pytest

from clientportal.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "provision_account.py"
_spec = importlib.util.spec_from_file_location("provision_account", _SCRIPT)
provision = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(provision)


def test_creates_tenant_and_account():
    result = provision.provision_account(
        "Joao@Empresa.com",
        "Teste123!",
        tenant_name="Empresa Ltda",
        business_identity="12.345.678/0001-90",
    )
    assert result["status"] == "created"
    store = get_runtime().store
    account = store.get_account_by_email("joao@empresa.com")
    assert account.id == result["account_id"]
    assert account.password_algo == "argon2id"
    assert store.get_tenant(result["tenant_id"]).business_identity == "12.345.678/0001-90"


def test_existing_account_is_left_alone():
    first = provision.provision_account("joao@empresa.com", "Teste123!", tenant_name="Empresa")
    second = provision.provision_account("joao@empresa.com", "Outra123!", tenant_name="Empresa")
    assert second["status"] == "already_exists"
    assert second["account_id"] == first["account_id"]


def test_dry_run_writes_nothing():
    result = provision.provision_account("maria@empresa.com", "Teste123!", tenant_name="X", dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_email("maria@empresa.com") is None


def test_unknown_tenant_id_is_rejected():
    with pytest.raises(ValueError):
        provision.provision_account("maria@empresa.com", "Teste123!", tenant_id="missing")


@pytest.mark.parametrize(
    "password,ok",
    [("Teste123!", True), ("teste123", False), ("Ab1!", False), ("abcdefgh1!", True)],
)
def test_password_complexity(password, ok):
    assert provision.validate_password(password) is ok
