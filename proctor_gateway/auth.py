"""Operator authentication.

Primary operators (the proctors who own a session) authenticate with an API
key sent as `X-Api-Key`. The key maps to an operator id; that id is recorded
as `created_by` on the links they issue.

Env vars:
  - PG_OPERATOR_KEYS_JSON: JSON dict mapping api_key -> operator_id
  - PG_OPERATOR_KEYS_FILE: path to a JSON file with the same mapping

With neither set, operator endpoints are disabled and every request is
rejected.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .crypto import constant_time_equals

ENV_OPERATOR_KEYS_JSON = "PG_OPERATOR_KEYS_JSON"
ENV_OPERATOR_KEYS_FILE = "PG_OPERATOR_KEYS_FILE"

ERR_NOT_CONFIGURED = "OPERATOR_AUTH_NOT_CONFIGURED"
ERR_CONFIG_INVALID = "OPERATOR_KEY_CONFIG_INVALID"
ERR_KEY_REQUIRED = "API_KEY_REQUIRED"
ERR_KEY_INVALID = "API_KEY_INVALID"


@dataclass(frozen=True)
class OperatorContext:
    """Resolved operator identity."""

    operator_id: Optional[str]
    error: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.operator_id is not None and self.error is None


@dataclass(frozen=True)
class OperatorAuth:
    """API key -> operator id mapping."""

    api_key_to_operator: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "OperatorAuth":
        return cls(api_key_to_operator={str(k): str(v) for k, v in mapping.items()}, configured=True)

    @classmethod
    def load_from_env(cls) -> "OperatorAuth":
        """Load the key mapping from env/file.

        If configuration is present but malformed, config_error is set and every
        request fails closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_OPERATOR_KEYS_JSON)
        file_path = os.getenv(ENV_OPERATOR_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError("PG_OPERATOR_KEYS_JSON must be a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("PG_OPERATOR_KEYS_FILE must contain a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = ERR_CONFIG_INVALID
            mapping = {}

        return cls(api_key_to_operator=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured and not self.config_error

    def resolve_operator(self, api_key: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (operator_id, error). A non-None error means reject."""
        if self.config_error:
            return None, self.config_error
        if not self.configured:
            return None, ERR_NOT_CONFIGURED
        if not api_key:
            return None, ERR_KEY_REQUIRED

        for key, operator_id in self.api_key_to_operator.items():
            if constant_time_equals(key, api_key):
                return operator_id, None
        return None, ERR_KEY_INVALID

    def resolve_context(self, api_key: Optional[str]) -> OperatorContext:
        operator_id, err = self.resolve_operator(api_key)
        if err:
            return OperatorContext(operator_id=None, error=err)
        return OperatorContext(operator_id=operator_id)
