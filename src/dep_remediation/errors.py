"""Exception taxonomy for dependency remediation."""


class RemediationError(Exception):
    """Base class for all remediation errors."""


class CommandError(RemediationError):
    """An external command could not be launched or did not finish in time."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"{command}: {reason}")


class ScanFailure(RemediationError):
    """A scanning tool failed or produced output that could not be read."""


class ParseFailure(ScanFailure):
    """A raw scanner record could not be normalized."""


class ApplyFailure(RemediationError):
    """A manifest rewrite or the reinstall/verify step failed."""

    def __init__(self, unit: str, reason: str):
        self.unit = unit
        self.reason = reason
        super().__init__(f"{unit}: {reason}")


class MergeConflict(RemediationError):
    """A branch merge could not complete cleanly and was aborted."""

    def __init__(self, branch: str, files: list[str] | None = None):
        self.branch = branch
        self.files = files or []
        detail = f" ({', '.join(self.files)})" if self.files else ""
        super().__init__(f"Merge of {branch} conflicts{detail}; resolve manually")


class NotificationFailure(RemediationError):
    """A single notification channel failed to deliver."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"{channel}: {reason}")


class ConfigurationError(RemediationError):
    """Required configuration is missing for an enabled feature."""
