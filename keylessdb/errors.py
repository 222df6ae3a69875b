"""
Exceptions raised by keyless-db.

Provider failures (botocore ClientError and friends) are never wrapped: they
reach the command line unchanged. Only conditions keyless-db itself detects
get a type here.
"""


class KeylessDbError(Exception):
    """Base class for keyless-db errors."""


class MfaChallengeFailed(KeylessDbError):
    """
    The interactive MFA exchange was rejected.

    The message is the operator-facing explanation ("invalid MFA token code",
    "invalid or expired token", ...). The provider error, when there is one,
    is chained as ``__cause__``.
    """


class ResourceNotFound(KeylessDbError):
    """A stack, parameter, bastion host or secret could not be found."""
