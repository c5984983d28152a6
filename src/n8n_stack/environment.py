"""
Environment loader - reads and validates the deployment .env file.

The file is parsed as plain KEY=value data and never executed, so shell
syntax in it has no effect. Command substitution is still rejected outright
because the same file is sourced by compose tooling and shell users.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .constants import PLACEHOLDER_SECRETS, REQUIRED_ENV_KEYS
from .errors import ConfigIncomplete, ConfigMissing, ConfigPlaceholder, ConfigUnsafe

logger = logging.getLogger(__name__)

_COMMAND_SUBSTITUTION = re.compile(r"^[^#]*\$\(")
_SQL_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Environment:
    """Validated configuration set for one invocation."""

    path: Path
    values: Mapping[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.values.get(key, default)

    @property
    def postgres_user(self) -> str:
        return self.values["POSTGRES_USER"]

    @property
    def postgres_db(self) -> str:
        return self.values["POSTGRES_DB"]

    @property
    def public_url(self) -> str | None:
        """Public URL of the n8n instance when the tunnel domain is configured."""
        subdomain = self.values.get("SUBDOMAIN")
        domain = self.values.get("DOMAIN_NAME")
        if subdomain and domain:
            return f"https://{subdomain}.{domain}"
        return None

    def variable_names(self) -> list[str]:
        """Variable names only, in file order - safe to store next to backups."""
        return list(self.values.keys())


def find_command_substitution(path: Path) -> list[int]:
    """Return 1-based line numbers of non-comment lines containing ``$(``."""
    offending = []
    with open(path, encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            if _COMMAND_SUBSTITUTION.match(line):
                offending.append(number)
    return offending


def find_placeholders(values: Mapping[str, str]) -> list[str]:
    """Return secret keys that still hold a value shipped in .env.example."""
    return [key for key, placeholders in PLACEHOLDER_SECRETS.items() if values.get(key) in placeholders]


def load_environment(path: Path) -> Environment:
    """
    Load and validate a deployment .env file.

    Raises:
        ConfigMissing: file does not exist
        ConfigUnsafe: a non-comment line uses command substitution
        ConfigIncomplete: POSTGRES_USER or POSTGRES_DB missing or empty
        ConfigPlaceholder: a secret still holds a template placeholder
    """
    if not path.is_file():
        raise ConfigMissing(f"{path.name} file not found: {path}")

    if lines := find_command_substitution(path):
        listed = ", ".join(str(n) for n in lines)
        raise ConfigUnsafe(
            f"{path.name} contains command substitution (line {listed}) - this is not allowed for security"
        )

    raw = dotenv_values(path, interpolate=False)
    values = {key: value or "" for key, value in raw.items()}

    missing = [key for key in REQUIRED_ENV_KEYS if not values.get(key)]
    if missing:
        raise ConfigIncomplete(f"Required environment variables not set: {', '.join(missing)}")

    if placeholders := find_placeholders(values):
        raise ConfigPlaceholder(
            f"Please set real passwords/keys in {path.name} (placeholder values in: {', '.join(placeholders)}). "
            "Generate with: openssl rand -base64 32 (passwords) or openssl rand -hex 32 (keys/tokens)"
        )

    logger.debug("Loaded %d variables from %s", len(values), path)
    return Environment(path=path, values=values)


def validate_database_name(name: str) -> str:
    """Ensure a database name is a plain SQL identifier before it is quoted into SQL."""
    if not _SQL_IDENTIFIER.match(name):
        raise ConfigUnsafe(f"Invalid database name format in POSTGRES_DB: {name!r}")
    return name
