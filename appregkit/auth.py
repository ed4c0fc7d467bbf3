from __future__ import annotations

import base64
import json
import os
import time
from typing import Any, Optional

import msal
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, DeviceCodeCredential

from appregkit.errors import NotConnectedError


AZURE_PUBLIC_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"  # Common public client (Azure CLI app id)
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class AzureMsalTokenCacheCredential:
    """
    Use the Azure CLI MSAL token cache (~/.azure/msal_token_cache.json) WITHOUT invoking `az`.
    This lets users reuse `az login` sessions for Graph calls.
    """

    def __init__(
        self,
        *,
        cache_path: Optional[str] = None,
        client_id: str = AZURE_PUBLIC_CLIENT_ID,
        authority: str = "https://login.microsoftonline.com/organizations",
    ) -> None:
        self._cache_path = cache_path or os.path.expanduser("~/.azure/msal_token_cache.json")
        self._client_id = client_id
        self._authority = authority
        self._cache = msal.SerializableTokenCache()
        self._app: Optional[msal.PublicClientApplication] = None

    def _load(self) -> msal.PublicClientApplication:
        if self._app is not None:
            return self._app
        if not os.path.exists(self._cache_path):
            raise RuntimeError(f"Azure CLI token cache not found at {self._cache_path}")
        with open(self._cache_path, "r", encoding="utf-8") as f:
            self._cache.deserialize(f.read())
        self._app = msal.PublicClientApplication(
            client_id=self._client_id,
            authority=self._authority,
            token_cache=self._cache,
        )
        return self._app

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        app = self._load()
        accounts = app.get_accounts()
        if not accounts:
            raise RuntimeError("No accounts found in Azure CLI token cache. Run `az login` or use device-code/client-secret auth.")
        result = app.acquire_token_silent(list(scopes), account=accounts[0])
        if not result or "access_token" not in result:
            raise RuntimeError(f"Failed to acquire token silently from Azure CLI cache: {result}")
        return AccessToken(result["access_token"], int(result.get("expires_on") or 0))


def _jwt_exp(token: str) -> Optional[int]:
    try:
        parts = token.split(".")
        if len(parts) < 2:
            return None
        payload = parts[1]
        payload += "=" * (-len(payload) % 4)
        data = base64.urlsafe_b64decode(payload.encode("utf-8"))
        obj = json.loads(data.decode("utf-8"))
        exp = obj.get("exp")
        return int(exp) if exp is not None else None
    except (ValueError, TypeError, AttributeError):
        return None


class StaticTokenCredential:
    def __init__(self, *, graph_token: str) -> None:
        self._graph_token = (graph_token or "").strip()

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        if not self._graph_token:
            raise ValueError("An empty Graph token was provided.")
        exp = _jwt_exp(self._graph_token) or int(time.time()) + 300
        return AccessToken(self._graph_token, exp)


def build_credential(args) -> Any:
    auth_method = (getattr(args, "auth_method", None) or "auto").strip().lower()
    if auth_method not in ("auto", "client-secret", "device-code", "az-cache"):
        raise ValueError("Invalid --auth-method. Use one of: auto, client-secret, device-code, az-cache")

    if getattr(args, "graph_token", None):
        return StaticTokenCredential(graph_token=args.graph_token)

    tenant_id = getattr(args, "tenant_id", None) or os.getenv("AZURE_TENANT_ID")
    client_id = getattr(args, "client_id", None) or os.getenv("AZURE_CLIENT_ID")
    client_secret = getattr(args, "client_secret", None) or os.getenv("AZURE_CLIENT_SECRET")
    if auth_method in ("auto", "client-secret") and tenant_id and client_id and client_secret:
        return ClientSecretCredential(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)

    if auth_method in ("auto", "az-cache") and not getattr(args, "no_az_token_cache", False):
        cred = AzureMsalTokenCacheCredential()
        try:
            cred.get_token(GRAPH_SCOPE)
            return cred
        except RuntimeError:
            if auth_method == "az-cache":
                raise

    if auth_method == "client-secret":
        raise ValueError("client-secret auth selected but missing --tenant-id/--client-id/--client-secret (or env vars).")

    if auth_method == "az-cache":
        raise ValueError("az-cache auth selected but no Azure CLI token cache was usable. Run `az login` or use another auth method.")

    def prompt_callback(verification_uri, user_code, expires_on):
        print(f"To sign in, open {verification_uri} and enter the code {user_code}")

    return DeviceCodeCredential(
        tenant_id=tenant_id or "organizations",
        client_id=getattr(args, "device_client_id", None) or AZURE_PUBLIC_CLIENT_ID,
        prompt_callback=prompt_callback,
    )


class GraphSession:
    """
    Authenticated-session gate for Microsoft Graph.

    is_connected() acquires a token once to prove the credential works; refresh and live lookups
    check it before making any upstream call.
    """

    def __init__(self, credential: Any = None) -> None:
        self.credential = credential
        self._connected: Optional[bool] = None
        self.last_error: Optional[str] = None

    def is_connected(self) -> bool:
        if self.credential is None:
            return False
        if self._connected is None:
            try:
                self.credential.get_token(GRAPH_SCOPE)
                self._connected = True
            except (ClientAuthenticationError, RuntimeError, ValueError) as e:
                self.last_error = str(e)
                self._connected = False
        return self._connected

    def require(self, action: str) -> None:
        if not self.is_connected():
            raise NotConnectedError(action)

    def token(self) -> str:
        if self.credential is None:
            raise NotConnectedError("a Microsoft Graph request")
        return self.credential.get_token(GRAPH_SCOPE).token
