"""
MFA-aware credential management for keyless-db.

Every AWS call made by the toolkit goes through
CredentialAuthority.execute_with_retry(). When a call fails in a way that
looks like an MFA policy denial, the operator is challenged for an MFA code
once, the resulting session credentials are applied to every service client,
and the call is retried a single time.
"""

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import MfaChallengeFailed
from .prompts import (
    is_valid_mfa_serial,
    is_valid_token_code,
    prompt_choice,
    prompt_validated,
)

DEFAULT_SESSION_DURATION = 3600  # 1 hour

MFA_MESSAGE_MARKERS = ("explicit deny", "MFA", "MultiFactorAuthentication")
MFA_ERROR_CODES = ("AccessDenied", "AccessDeniedException")

# Checked in order against the message of a rejected GetSessionToken call
EXCHANGE_ERROR_MESSAGES = (
    ("MultiFactorAuthentication", "invalid MFA token code"),
    ("TokenCode", "invalid or expired token"),
    ("AccessDenied", "check device/role configuration"),
)


@dataclass(frozen=True)
class Credential:
    """Temporary AWS credentials returned by STS."""

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime = None

    @classmethod
    def from_sts(cls, credentials):
        """Build a Credential from the ``Credentials`` mapping of an STS response."""
        return cls(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expiration=credentials.get("Expiration"),
        )

    def as_environ(self):
        """Return the AWS_* environment variables carrying this credential."""
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }

    def expires_within(self, minutes=5):
        """
        Check whether the credential is expired or expires soon.

        Args:
            minutes: Look-ahead window (default: 5)

        Returns:
            bool: True if expired or expiring within the window. A credential
            without expiration never expires.
        """
        if self.expiration is None:
            return False

        expiration = self.expiration
        if isinstance(expiration, str):
            expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        remaining = expiration - datetime.now(timezone.utc)
        return remaining.total_seconds() < minutes * 60


class AuthenticationState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class MfaDevice:
    serial_arn: str

    @property
    def display_name(self):
        """Trailing path segment of the ARN, e.g. ``alice`` for ``...:mfa/alice``."""
        return self.serial_arn.rsplit("/", 1)[-1]


def describe_error(error):
    """
    Extract the provider error code and message from an exception.

    Args:
        error: Any exception raised by an AWS call

    Returns:
        tuple: (code: str, message: str)
    """
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        return details.get("Code", "") or "", details.get("Message", "") or str(error)

    code = getattr(error, "code", None)
    return (str(code) if code else ""), str(error)


def is_mfa_required(error):
    """
    Decide whether a failed AWS call should trigger the MFA challenge.

    This is a heuristic. A plain permissions error with code AccessDenied is
    classified as MFA-related and causes an unneeded prompt; an MFA denial
    with an unrecognised message is not, and propagates as-is.

    Args:
        error: The exception raised by the call

    Returns:
        bool: True if the error looks like an MFA policy denial
    """
    code, message = describe_error(error)
    if code in MFA_ERROR_CODES:
        return True
    return any(marker in message for marker in MFA_MESSAGE_MARKERS)


def translate_exchange_error(error):
    """
    Map a rejected GetSessionToken call to an operator-facing failure.

    Returns:
        MfaChallengeFailed, or None when the error is not a known rejection
    """
    _, text = describe_error(error)
    for marker, message in EXCHANGE_ERROR_MESSAGES:
        if marker in text:
            return MfaChallengeFailed(message)
    return None


class CredentialProvider:
    """
    Owns the credentials every service client is built from.

    Before MFA the provider hands out clients from the long-lived credentials
    (profile, environment or instance role, resolved by boto3). After
    apply() every new client carries the temporary credential explicitly.
    """

    def __init__(self, region, profile=None, session_factory=None, export_environment=False):
        """
        Args:
            region: AWS region for all clients
            profile: Optional named profile for the long-lived credentials
            session_factory: Callable building sessions (default: boto3.Session)
            export_environment: Also write applied credentials to os.environ
        """
        self.region = region
        self.profile = profile
        self.export_environment = export_environment
        self._session_factory = session_factory or boto3.Session
        self._base_session = None
        self._credential = None

    @property
    def credential(self):
        return self._credential

    def base_session(self):
        """Session built from the long-lived credentials, created once."""
        if self._base_session is None:
            kwargs = {"region_name": self.region}
            if self.profile:
                kwargs["profile_name"] = self.profile
            self._base_session = self._session_factory(**kwargs)
        return self._base_session

    def session(self):
        """Session for service calls: the MFA credential once applied, else the base session."""
        if self._credential is None:
            return self.base_session()
        return self._session_factory(
            aws_access_key_id=self._credential.access_key_id,
            aws_secret_access_key=self._credential.secret_access_key,
            aws_session_token=self._credential.session_token,
            region_name=self.region,
        )

    def client(self, service_name):
        return self.session().client(service_name)

    def caller_identity(self):
        return self.client("sts").get_caller_identity()

    def apply(self, credential):
        """Make credential the source of all clients built from now on."""
        self._credential = credential
        if self.export_environment:
            os.environ.update(credential.as_environ())

    def subprocess_env(self):
        """
        Environment for child processes (aws ssm, psql).

        Carries the applied credential, or the selected profile until one is
        applied.
        """
        env = dict(os.environ)
        if self._credential is not None:
            env.update(self._credential.as_environ())
        elif self.profile:
            env["AWS_PROFILE"] = self.profile
        return env


class InteractiveChallenger:
    """What the MFA flow needs from an operator."""

    def prompt_device_serial(self):
        """Ask for an MFA device ARN when none could be discovered."""
        raise NotImplementedError

    def select_device(self, devices):
        """Pick one of several discovered MfaDevice objects."""
        raise NotImplementedError

    def prompt_token(self):
        """Return a six digit MFA code."""
        raise NotImplementedError


class TerminalChallenger(InteractiveChallenger):
    """Challenger that blocks on the controlling terminal."""

    def prompt_device_serial(self):
        print("Please provide your MFA device serial number:", file=sys.stderr)
        serial = prompt_validated(
            "MFA Device Serial Number",
            is_valid_mfa_serial,
            "Please enter a valid MFA device ARN (arn:aws:iam::ACCOUNT:mfa/DEVICE_NAME)",
        )
        return MfaDevice(serial)

    def select_device(self, devices):
        print("Multiple MFA devices found. Please select one:", file=sys.stderr)
        choices = [(f"{device.display_name} ({device.serial_arn})", device) for device in devices]
        return prompt_choice("Select MFA Device:", choices)

    def prompt_token(self):
        return prompt_validated(
            "Enter MFA token code",
            is_valid_token_code,
            "Please enter a 6-digit MFA token code",
        )


class StaticChallenger(InteractiveChallenger):
    """Non-interactive challenger for scripted use: answers come from arguments."""

    def __init__(self, token_code=None):
        self.token_code = token_code

    def prompt_device_serial(self):
        raise MfaChallengeFailed("no MFA device found, pass --mfa-serial")

    def select_device(self, devices):
        raise MfaChallengeFailed("multiple MFA devices found, pass --mfa-serial")

    def prompt_token(self):
        if not is_valid_token_code(self.token_code):
            raise MfaChallengeFailed("MFA token code must be exactly 6 digits")
        return self.token_code


class MfaAuthenticator:
    """
    Runs the MFA challenge: discover device, select it, read a code,
    exchange it with STS GetSessionToken.
    """

    def __init__(self, provider, challenger=None, device_serial=None,
                 duration_seconds=DEFAULT_SESSION_DURATION):
        """
        Args:
            provider: CredentialProvider whose base session is used for IAM/STS
            challenger: InteractiveChallenger (default: TerminalChallenger)
            device_serial: Known MFA device ARN, skips discovery when set
            duration_seconds: Lifetime of the session credentials
        """
        self.provider = provider
        self.challenger = challenger or TerminalChallenger()
        self.device_serial = device_serial
        self.duration_seconds = duration_seconds

    def discover_mfa_devices(self):
        """
        List the MFA devices of the calling IAM user.

        Returns:
            list: MfaDevice objects, empty if none or if the lookup failed
        """
        try:
            iam_client = self.provider.base_session().client("iam")
            response = iam_client.list_mfa_devices()
        except (ClientError, BotoCoreError) as e:
            print(f"⚠ Could not auto-discover MFA devices: {e}", file=sys.stderr)
            return []

        return [MfaDevice(device["SerialNumber"]) for device in response.get("MFADevices", [])]

    def select_device(self, devices):
        if not devices:
            return self.challenger.prompt_device_serial()
        if len(devices) == 1:
            print(f"✓ Auto-detected MFA device: {devices[0].serial_arn}", file=sys.stderr)
            return devices[0]
        return self.challenger.select_device(devices)

    def exchange_token(self, device, token_code):
        """
        Exchange an MFA code for session credentials. Never retried.

        Args:
            device: Selected MfaDevice
            token_code: Six digit code

        Returns:
            Credential

        Raises:
            MfaChallengeFailed: STS rejected the device or code
            ClientError: Any other provider failure, unchanged
        """
        sts_client = self.provider.base_session().client("sts")
        try:
            response = sts_client.get_session_token(
                SerialNumber=device.serial_arn,
                TokenCode=token_code,
                DurationSeconds=self.duration_seconds,
            )
        except ClientError as e:
            failure = translate_exchange_error(e)
            if failure is None:
                raise
            raise failure from e

        if not response.get("Credentials"):
            raise MfaChallengeFailed("no credentials returned from STS")
        return Credential.from_sts(response["Credentials"])

    def authenticate(self):
        """
        Run the full challenge flow.

        Returns:
            Credential: The new session credentials
        """
        print("🔒 Starting MFA authentication...", file=sys.stderr)

        if self.device_serial:
            device = MfaDevice(self.device_serial)
        else:
            device = self.select_device(self.discover_mfa_devices())

        token_code = self.challenger.prompt_token()

        print("Getting MFA session token...", file=sys.stderr)
        credential = self.exchange_token(device, token_code)

        print("✓ MFA authentication successful", file=sys.stderr)
        if credential.expiration:
            print(f"✓ Session expires: {credential.expiration}", file=sys.stderr)
        return credential


class CredentialAuthority:
    """
    Runs AWS operations and handles the one-time MFA step-up.

    Once a challenge has succeeded the authority stays AUTHENTICATED for its
    whole lifetime and never prompts again; later MFA-shaped failures
    propagate as ordinary errors.
    """

    def __init__(self, provider, authenticator=None, classifier=is_mfa_required):
        """
        Args:
            provider: CredentialProvider shared by all components
            authenticator: MfaAuthenticator (default: terminal prompts)
            classifier: Callable(exception) -> bool deciding MFA failures
        """
        self.provider = provider
        self.authenticator = authenticator or MfaAuthenticator(provider)
        self.classifier = classifier
        self.state = AuthenticationState.UNAUTHENTICATED
        self._listeners = []

    @property
    def is_authenticated(self):
        return self.state is AuthenticationState.AUTHENTICATED

    def register(self, callback):
        """
        Register a client holder.

        callback(provider) is called after new credentials are applied so the
        holder can rebuild the clients it keeps.
        """
        self._listeners.append(callback)

    def execute_with_retry(self, operation):
        """
        Call operation(), stepping up to MFA and retrying once if needed.

        Args:
            operation: Zero-argument callable performing the AWS call(s)

        Returns:
            Whatever operation() returns

        Raises:
            MfaChallengeFailed: The MFA exchange was rejected
            Exception: The first failure, unchanged, when it is not MFA-related or the
                authority is already authenticated, or the failure of the retry
        """
        try:
            return operation()
        except Exception as e:
            if self.is_authenticated or not self.classifier(e):
                raise
            print("⚠ MFA authentication required for AWS access", file=sys.stderr)

        self.authenticate()
        return operation()

    def authenticate(self):
        """
        Run the MFA challenge now and apply the result.

        Returns:
            Credential: The applied credential (the current one if already
            authenticated, without prompting)
        """
        if self.is_authenticated:
            return self.provider.credential

        credential = self.authenticator.authenticate()
        self.apply_credentials(credential)
        self.state = AuthenticationState.AUTHENTICATED
        return credential

    def apply_credentials(self, credential):
        self.provider.apply(credential)
        for callback in self._listeners:
            callback(self.provider)

    def check_mfa_status(self):
        """
        Check whether the current identity is already using temporary credentials.

        Returns:
            bool: True for an assumed-role identity or an applied MFA session
        """
        if self.provider.credential is not None:
            return True
        try:
            identity = self.provider.caller_identity()
        except (ClientError, BotoCoreError):
            return False
        return ":assumed-role/" in identity.get("Arn", "")
