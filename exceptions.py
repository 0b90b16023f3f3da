"""
Custom exceptions for the hosts router
"""


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


class ValidationError(Exception):
    """Raised when an ip, domain, port or rule fails validation"""
    pass


class NotFoundError(Exception):
    """Raised when a group or host id does not exist"""
    pass


class ConflictError(Exception):
    """Raised when the persisted store changed under a read-modify-write"""

    def __init__(self, message: str, expected_revision: int = None, actual_revision: int = None):
        super().__init__(message)
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class CommunicationError(Exception):
    """Raised when the supervisor could not be reached after all retry attempts"""

    def __init__(self, message: str, attempts: int = 0, last_error: str = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ApplyError(Exception):
    """Raised when the network configuration surface rejects a policy"""
    pass
