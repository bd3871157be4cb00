"""
BOQ Ledger settings
===================
Runtime settings and secrets, read from HashiCorp Vault with the process
environment as fallback.

Usage:
    from boq_utils.vault import secrets

    db_type = secrets.get("db_type", default="mock")       # str
    workers = secrets.get_int("worker_concurrency", 5)      # int
    tenants = secrets.get_json("boq_tenant_bill_map", {})   # parsed JSON

    secrets.refresh()   # re-read Vault

Keys are case-insensitive: "POSTGRES_URL" and "postgres_url" are the same
setting in Vault and in the environment.
"""

import os
import json
import logging
from typing import Any, Dict, Optional

import hvac

logger = logging.getLogger("BoqLedgerBE")

_MISSING = object()


class VaultClient:
    """
    Lazily authenticated KV v2 reader.

    All settings for one deployment live at secret/boq-ledger/{region}/{env}.
    Vault is optional: without VAULT_ADDR or credentials only the environment
    is consulted.
    """

    MOUNT_POINT = "secret"

    def __init__(self):
        self.vault_addr = (os.getenv("VAULT_ADDR") or "").strip()
        self.region = os.getenv("BOQ_LEDGER_REGION", "za")
        self.env = os.getenv("BOQ_LEDGER_ENV", "dev")
        self._client: Optional[hvac.Client] = None
        self._auth_failed = False
        self._values: Optional[Dict[str, Any]] = None

    @property
    def path(self) -> str:
        return f"boq-ledger/{self.region}/{self.env}"

    def _authenticate(self, client: hvac.Client) -> bool:
        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")
        if role_id and secret_id:
            client.auth.approle.login(role_id=role_id, secret_id=secret_id)
            logger.info(f"Vault AppRole login for {self.path}")
            return True

        token = os.getenv("VAULT_TOKEN")
        if token:
            client.token = token
            logger.info(f"Vault token auth for {self.path}")
            return True

        logger.warning("VAULT_ADDR is set but no Vault credentials are configured")
        return False

    def _get_client(self) -> Optional[hvac.Client]:
        if self._client is not None or self._auth_failed or not self.vault_addr:
            return self._client

        try:
            client = hvac.Client(url=self.vault_addr)
            if self._authenticate(client):
                self._client = client
            else:
                self._auth_failed = True
        except Exception as e:
            logger.warning(f"Could not connect to Vault: {e}")
            self._auth_failed = True
        return self._client

    def _read_vault(self) -> Dict[str, Any]:
        client = self._get_client()
        if client is None:
            return {}
        try:
            response = client.secrets.kv.v2.read_secret_version(
                path=self.path, mount_point=self.MOUNT_POINT
            )
        except Exception as e:
            logger.warning(f"Could not read {self.path} from Vault: {e}")
            return {}
        data = response["data"]["data"]
        logger.debug(f"Loaded {len(data)} settings from Vault ({self.path})")
        return {k.lower(): v for k, v in data.items()}

    def _lookup(self, key: str) -> Any:
        if self._values is None:
            self._values = self._read_vault()

        value = self._values.get(key.lower(), _MISSING)
        if value is not _MISSING:
            return value

        for candidate in (key, key.upper(), key.lower()):
            env_value = os.getenv(candidate)
            if env_value:
                return env_value
        return _MISSING

    def get(self, key: str, default: Optional[str] = None) -> Any:
        """
        Look a setting up in Vault, then in the environment.

        Raises:
            KeyError: If the key is unset and no default is given
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value
        if default is not None:
            return default
        raise KeyError(f"Secret '{key}' not found (Vault or env)")

    def get_int(self, key: str, default: int) -> int:
        raw = self._lookup(key)
        if raw is _MISSING:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Setting {key}={raw!r} is not an integer, using {default}")
            return default

    def get_json(self, key: str, default: Any = None) -> Any:
        """JSON-encoded setting. Structured values stored in Vault pass through as-is."""
        raw = self._lookup(key)
        if raw is _MISSING:
            return default
        if isinstance(raw, (dict, list)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Setting {key} is not valid JSON, ignoring it")
            return default

    def refresh(self) -> None:
        self._values = self._read_vault()
        logger.info(f"Settings refreshed from {self.path}")


secrets = VaultClient()
