"""
Environment variable policy for sandboxes.

Sandboxes only ever see host variables that were explicitly allow-listed,
and an allow-list may never contain a credential-shaped name.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from mcpexec.exceptions import SecurityConfigError

SECRET_ENV_PATTERN = re.compile(
    r"(KEY|SECRET|TOKEN|PASSWORD|PASSWD|CREDENTIAL|AUTH|PRIVATE)",
    re.IGNORECASE,
)

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_secret_name(name: str) -> bool:
    """True if the variable name looks like it carries a credential."""
    return SECRET_ENV_PATTERN.search(name) is not None


def ensure_safe_env_vars(names: Iterable[str]) -> list[str]:
    """Validate an env-var allow-list.

    Returns the de-duplicated list in its original order.

    Raises:
        SecurityConfigError: if any name is credential-shaped or not a
            valid environment variable identifier.
    """
    seen: list[str] = []
    secret: list[str] = []
    malformed: list[str] = []
    for name in names:
        if not isinstance(name, str) or not _ENV_NAME.match(name):
            malformed.append(str(name))
            continue
        if is_secret_name(name):
            secret.append(name)
            continue
        if name not in seen:
            seen.append(name)

    if secret:
        raise SecurityConfigError(
            f"Secret-shaped environment variables may not be passed to a sandbox: {', '.join(secret)}",
            offending=secret,
        )
    if malformed:
        raise SecurityConfigError(
            f"Invalid environment variable names: {', '.join(malformed)}",
            offending=malformed,
        )
    return seen
