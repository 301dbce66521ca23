"""Caller authentication for the impact gateway HTTP surface.

An API key maps to a member address, so the address a governance transaction
is sent from is never client-controlled. If no mapping is configured, callers
may still supply X-Member-Address but it is treated as unauthenticated
(development mode).

Operator routes (directory intake) additionally require the resolved address
to be a DAO member; ``resolve_member`` looks the address up in the hosted
contract and carries its role on the context.

Env vars:
  - IMPACT_API_KEYS_JSON: JSON dict mapping api_key -> member address
  - IMPACT_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from typing import Collection, Dict, Optional, Protocol, Tuple

from .governance import Member

ENV_API_KEYS_JSON = "IMPACT_API_KEYS_JSON"
ENV_API_KEYS_FILE = "IMPACT_API_KEYS_FILE"

NOT_A_MEMBER = "NOT_A_MEMBER"
ROLE_NOT_ALLOWED = "ROLE_NOT_ALLOWED"


class MemberDirectory(Protocol):
    def member(self, address: str) -> Optional[Member]: ...


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity context."""

    address: Optional[str]
    authenticated: bool
    error: Optional[str] = None
    role: Optional[str] = None
    stake: int = 0

    @property
    def is_member(self) -> bool:
        return self.role is not None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_address: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load the API key mapping from env/file.

        If configuration is present but malformed, config_error is set so
        callers fail closed.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls(api_key_to_address={})
        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("API key mapping must be a JSON object")
        except (OSError, ValueError):
            return cls(api_key_to_address={}, configured=True, config_error="API_KEY_CONFIG_INVALID")
        return cls(api_key_to_address={str(k): str(v) for k, v in data.items()}, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_identity(
        self,
        api_key: Optional[str],
        claimed_address: Optional[str] = None,
        require_if_enabled: bool = True,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Resolve caller identity.

        Returns (address, error). If error is not None, the request should be
        rejected.
        """
        if self.config_error:
            return None, self.config_error

        if not self.enabled():
            return claimed_address, None

        if not api_key:
            if require_if_enabled:
                return None, "API_KEY_REQUIRED"
            return claimed_address, None

        address = self.api_key_to_address.get(api_key)
        if not address:
            return None, "API_KEY_INVALID"

        if claimed_address and claimed_address != address:
            return None, "ADDRESS_MISMATCH"

        return address, None

    def resolve_context(
        self,
        api_key: Optional[str],
        claimed_address: Optional[str] = None,
        require_if_enabled: bool = True,
    ) -> AuthContext:
        address, err = self.resolve_identity(
            api_key=api_key,
            claimed_address=claimed_address,
            require_if_enabled=require_if_enabled,
        )
        if err:
            return AuthContext(address=None, authenticated=False, error=err)
        authenticated = bool(
            self.enabled() and api_key and address and self.api_key_to_address.get(api_key) == address
        )
        return AuthContext(address=address, authenticated=authenticated)

    def resolve_member(
        self,
        directory: MemberDirectory,
        api_key: Optional[str],
        claimed_address: Optional[str] = None,
        roles: Optional[Collection[str]] = None,
    ) -> AuthContext:
        """Resolve the caller and require a DAO membership, optionally in ``roles``."""
        ctx = self.resolve_context(api_key, claimed_address)
        if ctx.error or not ctx.address:
            return ctx
        m = directory.member(ctx.address)
        if m is None:
            return dataclasses.replace(ctx, error=NOT_A_MEMBER)
        ctx = dataclasses.replace(ctx, role=m.role, stake=m.stake)
        if roles is not None and m.role not in roles:
            return dataclasses.replace(ctx, error=ROLE_NOT_ALLOWED)
        return ctx
