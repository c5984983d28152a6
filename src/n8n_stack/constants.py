"""
Centralized constants for n8n-stack.

File names, placeholder secrets and defaults shared by the backup,
restore and update commands live here.
"""

# Keys that must be present and non-empty in .env
REQUIRED_ENV_KEYS = ("POSTGRES_USER", "POSTGRES_DB")

# Placeholder values shipped in .env.example, per secret-bearing key
PLACEHOLDER_SECRETS = {
    "POSTGRES_PASSWORD": {"generate-a-strong-password-here", "CHANGE_ME_generate_strong_password"},
    "POSTGRES_NON_ROOT_PASSWORD": {"generate-another-strong-password-here", "CHANGE_ME_generate_another_password"},
    "N8N_ENCRYPTION_KEY": {"CHANGE_ME_generate_hex_key"},
    "N8N_RUNNERS_AUTH_TOKEN": {"CHANGE_ME_generate_runner_token"},
}

# Passphrase for backup encryption is read from this environment variable
ENCRYPTION_KEY_ENV = "BACKUP_ENCRYPTION_KEY"

# Backup archive layout
BACKUP_PREFIX = "backup-"
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"
ENCRYPTED_SUFFIX = ".tar.gz.enc"
DATABASE_DUMP = "database.sql.gz"
VOLUME_ARCHIVE = "n8n_data.tar.gz"
CONFIG_DIR = "config"
ENV_NAMES_FILE = "env-variables.txt"

# Non-secret files captured in every backup (.env is never copied)
CONFIG_SNAPSHOT_FILES = ("compose.yaml", "init-data.sh", ".env.example", ".version")

# Files a restore may put back into the install root
RESTORABLE_CONFIG_FILES = ("compose.yaml", "init-data.sh", ".version")

# Files the updater owns and may overwrite from a release
MANAGED_FILES = (
    "compose.yaml",
    "init-data.sh",
    "backup.sh",
    "restore.sh",
    "update.sh",
    "CLAUDE.md",
    "CLOUDFLARE_SETUP.md",
    ".env.example",
    ".gitignore",
)
MANAGED_DIRS = (".github",)
EXECUTABLE_FILES = ("backup.sh", "restore.sh", "update.sh", "init-data.sh")

# Docker defaults
DATABASE_SERVICE = "postgres"
HELPER_SERVICE = "alpine"
HELPER_IMAGE_FALLBACK = "alpine:3.20"
VOLUME_NAME = "n8n_data"
LEGACY_PROJECT = "n8n-compose"

# Encryption (matches `openssl enc -aes-256-cbc -salt -pbkdf2 -iter 100000`)
PBKDF2_ITERATIONS = 100_000

UNKNOWN_VERSION = "unknown"
NO_RELEASE_NOTES = "(No release notes)"
