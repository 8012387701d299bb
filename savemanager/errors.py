"""Error taxonomy shared by the transfer engine and the task bridge."""


class SaveError(Exception):
    """Base class for every error raised by the save manager."""

    kind = 'Error'

    def __str__(self) -> str:
        message = super().__str__()
        return f"{self.kind}: {message}" if message else self.kind


class NotFoundError(SaveError):
    """A device or save entry does not exist."""
    kind = 'NotFound'


class AlreadyExistsError(SaveError):
    """The destination already holds an entry with the same id."""
    kind = 'AlreadyExists'


class InvalidArgumentError(SaveError):
    """The request itself is malformed (e.g. copying a save onto its own device)."""
    kind = 'InvalidArgument'


class EmptyTransferError(SaveError):
    """There was nothing to archive or extract."""
    kind = 'EmptyTransfer'


class SaveIOError(SaveError):
    """Filesystem failure."""
    kind = 'IoError'


class ArchiveError(SaveError):
    """Malformed or unsafe archive."""
    kind = 'ArchiveError'


class NetworkError(SaveError):
    kind = 'NetworkError'


class PermissionDeniedError(SaveError):
    kind = 'PermissionError'


class JobBusyError(SaveError):
    """A transfer job is already running."""
    kind = 'Busy'


class CommandError(SaveError):
    """An external system tool (nmcli, bluetoothctl, sudo) failed."""
    kind = 'CommandError'
