"""Shared test doubles for keyless-db tests."""

from unittest.mock import MagicMock

from botocore.exceptions import ClientError

from keylessdb.auth import CredentialAuthority


def client_error(code, message="", operation="TestOperation"):
    """Build a real botocore ClientError."""
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def sts_credentials(access_key="ASIAMFAEXAMPLE", secret="mfa-secret", token="mfa-token"):
    return {
        "AccessKeyId": access_key,
        "SecretAccessKey": secret,
        "SessionToken": token,
        "Expiration": "2030-01-01T00:00:00Z",
    }


class FakeSessionFactory:
    """
    Stand-in for boto3.Session that records constructor arguments.

    Sessions built from long-lived credentials share one client per service
    (self.base_clients); sessions built with explicit MFA credentials get
    fresh client mocks every time.
    """

    def __init__(self):
        self.calls = []
        self.base_clients = {}

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        session = MagicMock(name=f"session-{len(self.calls)}")
        if "aws_access_key_id" in kwargs:
            session.client.side_effect = lambda name: MagicMock(name=f"{name}-mfa")
        else:
            session.client.side_effect = self.base_client
        return session

    def base_client(self, name):
        if name not in self.base_clients:
            self.base_clients[name] = MagicMock(name=name)
        return self.base_clients[name]

    @property
    def mfa_calls(self):
        return [call for call in self.calls if "aws_access_key_id" in call]


class FakeAuthenticator:
    """Authenticator returning a fixed credential (or raising) and counting calls."""

    def __init__(self, credential=None, error=None):
        self.credential = credential
        self.error = error
        self.calls = 0

    def authenticate(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.credential


def make_authority(clients):
    """
    CredentialAuthority whose provider hands out the given client mocks.

    Args:
        clients: dict service name -> mock client
    """
    provider = MagicMock(name="provider")
    provider.region = "us-west-1"
    provider.credential = None
    provider.client.side_effect = lambda name: clients[name]
    provider.subprocess_env.return_value = {"PATH": "/usr/bin"}
    return CredentialAuthority(provider, authenticator=FakeAuthenticator())
