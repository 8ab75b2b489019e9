"""Organization API-key authentication.

Keys are never stored in plain text: the configured mapping is keyed by the
SHA-256 hex digest of the key and maps to an org id.

Env vars:
  - AGENTTRAIL_API_KEYS_JSON: JSON object {sha256(api_key): org_id}
  - AGENTTRAIL_API_KEYS_FILE: path to a JSON file with the same mapping

If neither is set, auth is disabled and every caller is anonymous.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

ENV_API_KEYS_JSON = "AGENTTRAIL_API_KEYS_JSON"
ENV_API_KEYS_FILE = "AGENTTRAIL_API_KEYS_FILE"

API_KEY_HEADER = "x-agenttrail-key"


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """`Authorization: Bearer <key>` wins over `X-AgentTrail-Key`."""
    auth_header = headers.get("authorization") or ""
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    raw = headers.get(API_KEY_HEADER)
    return raw.strip() or None if raw else None


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity."""

    org_id: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    key_hash_to_org: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the key-hash mapping from env/file.

        If configuration is present but malformed, config_error is set so
        callers fail closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_API_KEYS_JSON} must be a JSON object")
                mapping = {str(k).lower(): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_API_KEYS_FILE} must contain a JSON object")
                mapping = {str(k).lower(): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(key_hash_to_org=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, api_key: Optional[str]) -> AuthContext:
        """Map a presented key to its org.

        With auth disabled the caller is anonymous (org_id None). With auth
        enabled a missing key is rejected.
        """
        if self.config_error:
            return AuthContext(org_id=None, authenticated=False, error=self.config_error)
        if not self.enabled():
            return AuthContext(org_id=None, authenticated=False)
        if not api_key:
            return AuthContext(org_id=None, authenticated=False, error="API_KEY_REQUIRED")
        org_id = self.key_hash_to_org.get(hash_api_key(api_key))
        if not org_id:
            return AuthContext(org_id=None, authenticated=False, error="API_KEY_INVALID")
        return AuthContext(org_id=org_id, authenticated=True)
