"""
Error taxonomy for n8n-stack.

Every failure surfaces to the operator as one of these exceptions; the CLI
turns them into a message and a non-zero exit status.
"""


class StackError(Exception):
    """Base class for all n8n-stack failures."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(StackError):
    """Deployment configuration is missing or unusable."""


class ConfigMissing(ConfigError):
    pass


class ConfigUnsafe(ConfigError):
    pass


class ConfigIncomplete(ConfigError):
    pass


class ConfigPlaceholder(ConfigError):
    pass


# =============================================================================
# Preconditions
# =============================================================================


class PreconditionError(StackError):
    """The environment is not in a state where the operation may run."""


class ServiceNotRunning(PreconditionError):
    pass


class NonInteractive(PreconditionError):
    pass


class MissingKey(PreconditionError):
    pass


class LockHeld(PreconditionError):
    pass


class BackupRequired(PreconditionError):
    pass


# =============================================================================
# Pipelines (external commands, compression, encryption)
# =============================================================================


class PipelineError(StackError):
    """An external command or data transformation failed."""


class DumpFailed(PipelineError):
    """Database dump failed; ``stage`` names the failing side of the pipe."""

    def __init__(self, stage: str, detail: str = ""):
        self.stage = stage
        message = f"Database backup failed at stage '{stage}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class EncryptionFailed(PipelineError):
    pass


class DecryptFailed(PipelineError):
    pass


class CommandFailed(PipelineError):
    """A docker command exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        message = f"Command failed ({returncode}): {' '.join(command)}"
        if self.stderr:
            message = f"{message}\n{self.stderr}"
        super().__init__(message)


# =============================================================================
# Integrity
# =============================================================================


class IntegrityError(StackError):
    """An archive or its contents failed validation."""


class ArchiveNotFound(IntegrityError):
    pass


class ArchiveCorrupt(IntegrityError):
    pass


class InvalidLayout(IntegrityError):
    pass


class InvalidDump(IntegrityError):
    pass


# =============================================================================
# Readiness
# =============================================================================


class ReadinessTimeout(StackError):
    """A service never reported ready within the polling budget."""


class DatabaseTimeout(ReadinessTimeout):
    pass


# =============================================================================
# Network / release feed
# =============================================================================


class NetworkError(StackError):
    """Fetching release metadata or artifacts failed."""


class FetchFailed(NetworkError):
    pass


class RateLimited(NetworkError):
    pass


class RepoNotFound(NetworkError):
    pass


class EmptyResponse(NetworkError):
    pass


class MalformedRelease(NetworkError):
    pass
