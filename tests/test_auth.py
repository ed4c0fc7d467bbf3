from __future__ import annotations

import base64
import json
from types import SimpleNamespace

import pytest
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential

from appregkit.auth import GraphSession, StaticTokenCredential, build_credential
from appregkit.errors import NotConnectedError


def _jwt(payload: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii").rstrip("=")
    return f"e30.{body}.sig"


class FailingCredential:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    def get_token(self, *scopes, **kwargs):
        self.calls += 1
        raise self.exc


class TestStaticToken:
    def test_expiry_comes_from_jwt(self) -> None:
        token = StaticTokenCredential(graph_token=_jwt({"exp": 1893456000})).get_token("scope")
        assert token.expires_on == 1893456000

    def test_opaque_token_gets_short_lifetime(self) -> None:
        assert StaticTokenCredential(graph_token="opaque").get_token().token == "opaque"

    def test_empty_token(self) -> None:
        with pytest.raises(ValueError):
            StaticTokenCredential(graph_token="  ").get_token()


class TestGraphSession:
    def test_no_credential_is_not_connected(self) -> None:
        session = GraphSession()
        assert not session.is_connected()
        with pytest.raises(NotConnectedError):
            session.require("a catalog refresh")

    def test_failed_token_is_remembered(self) -> None:
        cred = FailingCredential(ClientAuthenticationError("bad secret"))
        session = GraphSession(cred)
        assert not session.is_connected()
        assert not session.is_connected()
        assert cred.calls == 1
        assert "bad secret" in session.last_error

    def test_working_credential(self) -> None:
        session = GraphSession(StaticTokenCredential(graph_token="opaque"))
        assert session.is_connected()
        session.require("anything")
        assert session.token() == "opaque"


class TestBuildCredential:
    def test_graph_token_wins(self) -> None:
        cred = build_credential(SimpleNamespace(graph_token="tok", auth_method="auto"))
        assert isinstance(cred, StaticTokenCredential)

    def test_client_secret(self) -> None:
        args = SimpleNamespace(
            graph_token=None, auth_method="client-secret", tenant_id="t", client_id="c", client_secret="s"
        )
        assert isinstance(build_credential(args), ClientSecretCredential)

    def test_client_secret_missing_values(self, monkeypatch) -> None:
        for var in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
            monkeypatch.delenv(var, raising=False)
        with pytest.raises(ValueError, match="client-secret"):
            build_credential(SimpleNamespace(graph_token=None, auth_method="client-secret"))

    def test_unknown_method(self) -> None:
        with pytest.raises(ValueError, match="auth-method"):
            build_credential(SimpleNamespace(auth_method="kerberos"))
