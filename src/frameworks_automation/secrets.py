from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

logger = logging.getLogger(__name__)


def is_secret_ref(value: Any) -> bool:
    return isinstance(value, dict) and "aws_secret" in value


class SecretResolver:
    """Resolves ``{aws_secret: name, key: field}`` references in backend variables.

    Values are fetched from AWS Secrets Manager on first use and cached for
    the lifetime of the resolver. Nothing is written to disk.
    """

    def __init__(self, region: Optional[str] = None, profile: Optional[str] = None):
        self.region = region
        self.profile = profile
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._client = None

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self.resolve_value(v) for k, v in values.items()}

    def resolve_value(self, value: Any) -> Any:
        if is_secret_ref(value):
            return self._resolve_aws_secret(value)
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        return value

    def _secrets_client(self):
        if self._client is None:
            if self.profile:
                session = boto3.session.Session(profile_name=self.profile, region_name=self.region)
            else:
                session = boto3.session.Session(region_name=self.region)
            self._client = session.client("secretsmanager")
        return self._client

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        if boto3 is None:
            raise RuntimeError("boto3 is required to resolve aws_secret references")
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        logger.debug("resolving secret %s", name)
        response = self._secrets_client().get_secret_value(SecretId=name)
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise RuntimeError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            payload = json.loads(secret_str)
            value = payload[str(key)]

        self._cache[cache_key] = value
        return value
