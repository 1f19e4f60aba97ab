"""Domain-specific errors for dashflash."""


class DashflashError(Exception):
    """Base error for dashflash."""


class ConfigError(DashflashError):
    """Raised when the configuration file does not conform to schema or semantics."""


class TransportError(DashflashError):
    """Base serial transport error."""


class PortUnavailableError(TransportError):
    """Raised when no serial port was chosen or none could be found."""


class OpenFailedError(TransportError):
    """Raised when the serial device refuses to open at the requested baud rate."""


class NotConnectedError(TransportError):
    """Raised when a line-protocol call is made without an open native transport."""


class ReadTimeoutError(TransportError):
    """Raised when a single read attempt yields no data within its sub-timeout."""


class SessionError(DashflashError):
    """Base device session error."""


class ConnectFailedError(SessionError):
    """Raised when connect() cannot acquire the serial port."""


class NoDeviceError(SessionError):
    """Raised when the bootloader is requested without an open transport."""


class SessionStateError(SessionError):
    """Raised when an operation is invalid for the current session mode."""


class DeviceBusyError(SessionError):
    """Raised when an operation is requested while another one is in flight."""


class ProgrammerError(DashflashError):
    """Raised when the bootloader programmer reports a failure."""


class ChecksumMismatchError(ProgrammerError):
    """Raised when the flash digest read back does not match the image digest."""


class FirmwareUnavailableError(DashflashError):
    """Raised when a firmware image could not be retrieved or is absent."""


class PreferencesError(DashflashError):
    """Base device preferences error."""


class InvalidPreferencesError(PreferencesError):
    """Raised when user-supplied preferences are not valid JSON."""


class PreferencesUpdateError(PreferencesError):
    """Raised when the device answers a preferences update with ERROR."""
