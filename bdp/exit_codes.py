"""
Standard exit codes for bdp commands.

Following Unix/POSIX conventions for command-line tools. Callers (CI
scripts, wrappers) rely on the split between "the manifest needs a manual
edit" and "transient, retry later".
"""

# Standard POSIX exit codes
SUCCESS = 0              # Successful termination
GENERAL_ERROR = 1        # General errors
USAGE_ERROR = 2          # Misuse of shell command (wrong arguments, etc.)

# Application-specific exit codes (64-113 are typically available)
DATA_ERROR = 65              # Malformed spec, manifest or lockfile
CONFIG_ERROR = 66            # Configuration file error
PERMISSION_ERROR = 67        # Insufficient permissions
NETWORK_ERROR = 68           # Network connection failed (not retried)
REGISTRY_ERROR = 69          # Registry rejected the request (not found, mismatch)
PARTIAL_SUCCESS = 71         # Some operations succeeded, some failed
MANIFEST_EDIT_REQUIRED = 72  # Version conflict or dependency cycle
INTEGRITY_ERROR = 73         # Cache contents disagree with the lockfile
TRANSIENT_FAILURE = 75       # Checksum/lock/network failures after retries (EX_TEMPFAIL)
INTERRUPTED = 130            # Terminated by Ctrl+C (SIGINT)

# Exit code mappings for common exceptions
EXCEPTION_EXIT_CODES = {
    'FileNotFoundError': GENERAL_ERROR,
    'PermissionError': PERMISSION_ERROR,
    'ConnectionError': NETWORK_ERROR,
    'TimeoutError': NETWORK_ERROR,
    'ValueError': DATA_ERROR,
    'KeyError': DATA_ERROR,
    'JSONDecodeError': DATA_ERROR,
    'KeyboardInterrupt': INTERRUPTED,
}


def get_exit_code_for_exception(exc: Exception) -> int:
    """
    Get the appropriate exit code for an exception.

    Args:
        exc: The exception that occurred

    Returns:
        Appropriate exit code
    """
    if isinstance(exc, CommandError):
        return exc.exit_code
    exc_name = exc.__class__.__name__
    return EXCEPTION_EXIT_CODES.get(exc_name, GENERAL_ERROR)


class CommandError(Exception):
    """
    Exception that commands can raise to indicate specific exit codes.
    """
    def __init__(self, message: str, exit_code: int = GENERAL_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


class ConfigError(CommandError):
    """Raised when there's a configuration error."""
    def __init__(self, message: str):
        super().__init__(message, CONFIG_ERROR)


class PartialSuccessError(CommandError):
    """Raised when some operations succeed and some fail."""
    def __init__(self, message: str, succeeded: int = 0, failed: int = 0,
                 exit_code: int = PARTIAL_SUCCESS):
        super().__init__(message, exit_code)
        self.succeeded = succeeded
        self.failed = failed
