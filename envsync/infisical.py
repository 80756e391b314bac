from __future__ import annotations

from threading import Lock

import httpx

from .config import Credentials
from .db import log_event


class SecretProviderError(Exception):
    pass


class SecretAuthError(SecretProviderError):
    pass


class InfisicalClient:
    """Minimal Infisical REST client: universal-auth login + raw secrets listing.

    One access token is cached per (site, client id, client secret). A 401 on
    the listing call drops the token and logs in once more.
    """

    LOGIN_PATH = "/api/v1/auth/universal-auth/login"
    SECRETS_PATH = "/api/v3/secrets/raw"

    def __init__(self, timeout_s: float = 30.0, transport: httpx.BaseTransport | None = None):
        self._http = httpx.Client(timeout=timeout_s, transport=transport, follow_redirects=False)
        self._lock = Lock()
        self._tokens: dict[tuple[str, str, str], str] = {}

    def close(self) -> None:
        self._http.close()

    def _token(self, creds: Credentials, fresh: bool = False) -> str:
        key = (creds.site_url, creds.client_id, creds.client_secret)
        with self._lock:
            if fresh:
                self._tokens.pop(key, None)
            token = self._tokens.get(key)
        if token:
            return token

        try:
            resp = self._http.post(
                f"{creds.site_url}{self.LOGIN_PATH}",
                json={"clientId": creds.client_id, "clientSecret": creds.client_secret},
            )
        except httpx.HTTPError as e:
            raise SecretProviderError(f"Login request to {creds.site_url} failed: {type(e).__name__}: {e}") from e
        if resp.status_code in (400, 401, 403):
            raise SecretAuthError(f"Login rejected by {creds.site_url}: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise SecretProviderError(f"Login to {creds.site_url} failed: HTTP {resp.status_code}")
        try:
            token = resp.json()["accessToken"]
        except (ValueError, KeyError, TypeError) as e:
            raise SecretProviderError("Login response has no accessToken") from e

        with self._lock:
            self._tokens[key] = token
        return token

    def _list(self, creds: Credentials, token: str) -> httpx.Response:
        try:
            return self._http.get(
                f"{creds.site_url}{self.SECRETS_PATH}",
                params={
                    "workspaceId": creds.project_id,
                    "environment": creds.environment,
                    "secretPath": "/",
                    "recursive": "true",
                    "expandSecretReferences": "true",
                    "viewSecretValue": "true",
                },
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise SecretProviderError(f"Secrets request to {creds.site_url} failed: {type(e).__name__}: {e}") from e

    def fetch_variables(self, creds: Credentials) -> dict[str, str]:
        resp = self._list(creds, self._token(creds))
        if resp.status_code == 401:
            resp = self._list(creds, self._token(creds, fresh=True))
        if resp.status_code in (401, 403):
            raise SecretAuthError(
                f"Not allowed to read {creds.project_id}/{creds.environment}: HTTP {resp.status_code}"
            )
        if resp.status_code != 200:
            raise SecretProviderError(
                f"Listing secrets for {creds.project_id}/{creds.environment} failed: HTTP {resp.status_code}"
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise SecretProviderError("Secrets response is not JSON") from e

        out: dict[str, str] = {}
        secrets = payload.get("secrets") if isinstance(payload, dict) else None
        if isinstance(secrets, list):
            for item in secrets:
                if not isinstance(item, dict):
                    continue
                key = item.get("secretKey")
                value = item.get("secretValue")
                if key and value is not None:
                    out[str(key)] = str(value)
        log_event("DEBUG", f"Fetched {len(out)} secrets from {creds.project_id}/{creds.environment}")
        return out
