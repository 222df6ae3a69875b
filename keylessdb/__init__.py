"""
keyless-db: keyless database access and migrations on AWS.

A Python CLI toolkit that reaches databases through Session Manager bastion
hosts instead of SSH keys or open ports, reads DynamoDB tables with sensitive
fields masked, and drives DMS migrations. Every AWS call steps up to MFA
session credentials on demand.

Key features:
- One-time MFA step-up with transparent retry of the failed call
- Session Manager tunnels, bastion shells and psql with automatic passwords
- DynamoDB list/describe/scan/query/get-item with sensitive field masking
- DMS migration start/stop/status/validate/cleanup
"""

__version__ = "0.1.0"
__license__ = "MIT"

from .auth import (
    AuthenticationState,
    Credential,
    CredentialAuthority,
    CredentialProvider,
    InteractiveChallenger,
    MfaAuthenticator,
    MfaDevice,
    StaticChallenger,
    TerminalChallenger,
    is_mfa_required,
)
from .database import DatabaseConnector
from .dynamodb import DynamoDBConnector, filter_sensitive_fields
from .errors import KeylessDbError, MfaChallengeFailed, ResourceNotFound
from .migration import MigrationManager

__all__ = [
    # Credential lifecycle - the entry point for programmatic use
    "CredentialAuthority",
    "CredentialProvider",
    "Credential",
    "AuthenticationState",
    "is_mfa_required",
    # MFA challenge
    "MfaAuthenticator",
    "MfaDevice",
    "InteractiveChallenger",
    "TerminalChallenger",
    "StaticChallenger",
    # AWS components
    "DatabaseConnector",
    "DynamoDBConnector",
    "MigrationManager",
    "filter_sensitive_fields",
    # Errors
    "KeylessDbError",
    "MfaChallengeFailed",
    "ResourceNotFound",
]
