from unittest.mock import MagicMock

import pytest
import requests

from common.errors import AppError, KeyNotFound
from core.identities import IdentityRegistry
from signing.keys import KeyResolver
from vault.client import VaultClient


def _resp(status_code=200, body=None):
    r = MagicMock()
    r.status_code = status_code
    r.json.return_value = body if body is not None else {}
    if status_code >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error", response=r)
    return r


def _client(session):
    return VaultClient(api_url="https://vault.test", agent_id="agent-1", api_key="ak_live", session=session)


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("execution.retry.time.sleep", lambda s: None)


def test_token_is_cached_until_refresh_margin():
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok-1", "expires_in": 3600})
    c = _client(session)
    assert c.token() == "tok-1"
    assert c.token() == "tok-1"
    assert session.post.call_count == 1
    _, kwargs = session.post.call_args
    assert kwargs["json"] == {"agent_id": "agent-1", "api_key": "ak_live"}


def test_short_lived_token_is_not_cached():
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok", "expires_in": 60})
    c = _client(session)
    c.token()
    c.token()
    assert session.post.call_count == 2


def test_get_secret_reads_value_with_bearer():
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok", "expires_in": 3600})
    session.get.return_value = _resp(body={"value": "0xkey"})
    assert _client(session).get_secret("vault-1", "keys/base-signer") == "0xkey"
    args, kwargs = session.get.call_args
    assert args[0] == "https://vault.test/v1/vaults/vault-1/secrets/keys/base-signer"
    assert kwargs["headers"]["Authorization"] == "Bearer tok"


def test_missing_secret_is_key_not_found_and_not_retried():
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok", "expires_in": 3600})
    session.get.return_value = _resp(status_code=404)
    with pytest.raises(KeyNotFound):
        _client(session).get_secret("vault-1", "keys/base-signer")
    assert session.get.call_count == 1


def test_transient_errors_are_retried(monkeypatch):
    monkeypatch.setenv("VAULT_RETRY_MAX_ATTEMPTS", "3")
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok", "expires_in": 3600})
    session.get.side_effect = [requests.ConnectionError("reset"), _resp(status_code=502), _resp(body={"value": "k"})]
    assert _client(session).get_secret("vault-1", "keys/base-signer") == "k"
    assert session.get.call_count == 3


def test_agent_config_is_cached():
    session = MagicMock()
    session.post.return_value = _resp(body={"access_token": "tok", "expires_in": 3600})
    session.get.return_value = _resp(body={"id": "agent-1", "tx_allowed_chains": ["base"]})
    c = _client(session)
    assert c.get_agent_config()["tx_allowed_chains"] == ["base"]
    c.get_agent_config()
    assert session.get.call_count == 1
    c.get_agent_config(refresh=True)
    assert session.get.call_count == 2


def test_unconfigured_client_refuses():
    c = VaultClient(api_url="https://vault.test", agent_id="", api_key="", session=MagicMock())
    with pytest.raises(AppError) as e:
        c.get_secret("v", "p")
    assert e.value.code == "vault_not_configured"


def test_resolver_formats_key_path_per_chain():
    vault = MagicMock()
    vault.get_secret.return_value = "0xabc"
    reg = IdentityRegistry()
    ident = reg.register(identity_id="a", vault_id="vault-9")
    handle = KeyResolver(vault).resolve(ident, "sepolia")
    vault.get_secret.assert_called_once_with("vault-9", "keys/sepolia-signer")
    assert handle.consume() == "0xabc"
    assert "0xabc" not in repr(handle)


def test_resolver_maps_empty_material_to_key_not_found():
    vault = MagicMock()
    vault.get_secret.return_value = "  "
    ident = IdentityRegistry().register(identity_id="a", vault_id="v")
    with pytest.raises(KeyNotFound):
        KeyResolver(vault).resolve(ident, "base")


def test_resolver_wraps_raw_errors():
    vault = MagicMock()
    vault.get_secret.side_effect = RuntimeError("connection refused")
    ident = IdentityRegistry().register(identity_id="a", vault_id="v")
    with pytest.raises(AppError) as e:
        KeyResolver(vault).resolve(ident, "base")
    assert e.value.code == "network_error"
