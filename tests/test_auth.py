"""
Tests for keylessdb.auth - MFA step-up and credential management.
"""

import io
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from keylessdb.auth import (
    AuthenticationState,
    Credential,
    CredentialAuthority,
    CredentialProvider,
    InteractiveChallenger,
    MfaAuthenticator,
    MfaDevice,
    StaticChallenger,
    TerminalChallenger,
    describe_error,
    is_mfa_required,
    translate_exchange_error,
)
from keylessdb.dynamodb import DynamoDBConnector
from keylessdb.errors import MfaChallengeFailed

from tests.helpers import FakeAuthenticator, FakeSessionFactory, client_error, sts_credentials

DEVICE_ARN = "arn:aws:iam::111122223333:mfa/alice"
CREDENTIAL = Credential("ASIAMFAEXAMPLE", "mfa-secret", "mfa-token")


class CountingOperation:
    """Callable that raises the queued errors in order, then returns a result."""

    def __init__(self, errors=(), result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class FakeChallenger(InteractiveChallenger):
    def __init__(self, token="123456", serial=DEVICE_ARN, choice=0):
        self.token = token
        self.serial = serial
        self.choice = choice
        self.token_prompts = 0
        self.serial_prompts = 0
        self.selections = []

    def prompt_device_serial(self):
        self.serial_prompts += 1
        return MfaDevice(self.serial)

    def select_device(self, devices):
        self.selections.append(devices)
        return devices[self.choice]

    def prompt_token(self):
        self.token_prompts += 1
        return self.token


def mfa_denied(message="User is not authorized with an explicit deny"):
    return client_error("AccessDeniedException", message)


@patch("sys.stderr", new_callable=io.StringIO)
class TestClassification(unittest.TestCase):
    """Test the MFA failure classifier and exchange error translation."""

    def test_access_denied_codes_are_mfa(self, _stderr):
        """AccessDenied and AccessDeniedException are classified as MFA failures"""
        self.assertTrue(is_mfa_required(client_error("AccessDenied", "nope")))
        self.assertTrue(is_mfa_required(client_error("AccessDeniedException", "nope")))

    def test_message_markers_are_mfa(self, _stderr):
        """Message markers alone classify an error as MFA-related"""
        self.assertTrue(is_mfa_required(client_error("Forbidden", "... with an explicit deny in ...")))
        self.assertTrue(is_mfa_required(client_error("Other", "MFA required")))
        self.assertTrue(is_mfa_required(Exception("MultiFactorAuthentication failed")))

    def test_other_errors_are_not_mfa(self, _stderr):
        """Unrelated failures are not classified as MFA"""
        self.assertFalse(is_mfa_required(client_error("ResourceNotFoundException", "Table not found")))
        self.assertFalse(is_mfa_required(ValueError("bad input")))
        self.assertFalse(is_mfa_required(Exception("ValidationException: bad parameter")))

    def test_describe_error_plain_exception(self, _stderr):
        """Plain exceptions use their code attribute and text"""
        error = Exception("boom")
        error.code = "Throttled"
        self.assertEqual(describe_error(error), ("Throttled", "boom"))
        self.assertEqual(describe_error(RuntimeError("x")), ("", "x"))

    def test_translate_exchange_errors_in_order(self, _stderr):
        """GetSessionToken rejections map to operator messages"""
        cases = [
            (client_error("AccessDenied", "MultiFactorAuthentication failed with invalid MFA one time pass code."),
             "invalid MFA token code"),
            (client_error("ValidationError", "Invalid TokenCode value"), "invalid or expired token"),
            (client_error("AccessDenied", "AccessDenied: MFA device is not assigned to this user"),
             "check device/role configuration"),
        ]
        for error, expected in cases:
            failure = translate_exchange_error(error)
            self.assertIsInstance(failure, MfaChallengeFailed)
            self.assertEqual(str(failure), expected)

        self.assertIsNone(translate_exchange_error(client_error("Throttling", "Rate exceeded")))

    def test_translate_ignores_error_code(self, _stderr):
        """Only the message is matched, so an AccessDenied code alone is not translated"""
        error = client_error("AccessDenied", "User is not authorized to perform sts:GetSessionToken")
        self.assertIsNone(translate_exchange_error(error))


class TestCredential(unittest.TestCase):
    """Test the Credential value type."""

    def test_from_sts_and_environ(self):
        """STS credentials map onto the three AWS_* variables"""
        credential = Credential.from_sts(sts_credentials())
        self.assertEqual(
            credential.as_environ(),
            {
                "AWS_ACCESS_KEY_ID": "ASIAMFAEXAMPLE",
                "AWS_SECRET_ACCESS_KEY": "mfa-secret",
                "AWS_SESSION_TOKEN": "mfa-token",
            },
        )

    def test_repr_hides_secrets(self):
        """Secret values are left out of repr"""
        text = repr(CREDENTIAL)
        self.assertIn("ASIAMFAEXAMPLE", text)
        self.assertNotIn("mfa-secret", text)
        self.assertNotIn("mfa-token", text)

    def test_expires_within(self):
        """Expiry check handles datetimes, ISO strings and missing values"""
        now = datetime.now(timezone.utc)
        self.assertFalse(Credential("a", "b", "c").expires_within())
        self.assertTrue(Credential("a", "b", "c", now - timedelta(minutes=1)).expires_within())
        self.assertTrue(Credential("a", "b", "c", now + timedelta(minutes=2)).expires_within())
        self.assertFalse(Credential("a", "b", "c", now + timedelta(hours=1)).expires_within())
        self.assertFalse(Credential("a", "b", "c", "2999-01-01T00:00:00Z").expires_within())
        naive = datetime.utcnow() - timedelta(hours=1)
        self.assertTrue(Credential("a", "b", "c", naive).expires_within())

    def test_device_display_name(self):
        self.assertEqual(MfaDevice(DEVICE_ARN).display_name, "alice")


class TestCredentialProvider(unittest.TestCase):
    """Test session construction and credential application."""

    def test_base_session_uses_profile_and_region(self):
        """The base session is built once from profile and region"""
        factory = FakeSessionFactory()
        provider = CredentialProvider("eu-west-1", profile="ops", session_factory=factory)

        first = provider.base_session()
        self.assertIs(provider.base_session(), first)
        self.assertEqual(factory.calls, [{"region_name": "eu-west-1", "profile_name": "ops"}])

    def test_session_after_apply_carries_credential(self):
        """Clients built after apply() use the MFA credential explicitly"""
        factory = FakeSessionFactory()
        provider = CredentialProvider("us-west-1", session_factory=factory)
        provider.apply(CREDENTIAL)

        provider.client("s3")

        self.assertEqual(
            factory.mfa_calls,
            [{
                "aws_access_key_id": "ASIAMFAEXAMPLE",
                "aws_secret_access_key": "mfa-secret",
                "aws_session_token": "mfa-token",
                "region_name": "us-west-1",
            }],
        )

    def test_apply_without_export_leaves_environment(self):
        """Process environment is untouched unless export is enabled"""
        with patch.dict(os.environ, {}, clear=True):
            provider = CredentialProvider("us-west-1", session_factory=FakeSessionFactory())
            provider.apply(CREDENTIAL)
            self.assertNotIn("AWS_SESSION_TOKEN", os.environ)
            self.assertEqual(provider.subprocess_env()["AWS_SESSION_TOKEN"], "mfa-token")

    def test_subprocess_env_carries_profile(self):
        """Child processes use the selected profile until a credential is applied"""
        with patch.dict(os.environ, {"PATH": "/usr/bin"}, clear=True):
            provider = CredentialProvider("us-west-1", profile="prod", session_factory=FakeSessionFactory())
            self.assertEqual(provider.subprocess_env(), {"PATH": "/usr/bin", "AWS_PROFILE": "prod"})

            provider.apply(CREDENTIAL)
            env = provider.subprocess_env()
            self.assertNotIn("AWS_PROFILE", env)
            self.assertEqual(env["AWS_ACCESS_KEY_ID"], "ASIAMFAEXAMPLE")

    def test_subprocess_env_without_profile(self):
        with patch.dict(os.environ, {"PATH": "/usr/bin"}, clear=True):
            provider = CredentialProvider("us-west-1", session_factory=FakeSessionFactory())
            self.assertEqual(provider.subprocess_env(), {"PATH": "/usr/bin"})

    def test_apply_with_export_updates_environment(self):
        """export_environment writes the credential into os.environ"""
        with patch.dict(os.environ, {"AWS_ACCESS_KEY_ID": "AKIALONGLIVED"}, clear=True):
            provider = CredentialProvider(
                "us-west-1", session_factory=FakeSessionFactory(), export_environment=True
            )
            provider.apply(CREDENTIAL)
            self.assertEqual(os.environ["AWS_ACCESS_KEY_ID"], "ASIAMFAEXAMPLE")
            self.assertEqual(os.environ["AWS_SECRET_ACCESS_KEY"], "mfa-secret")
            self.assertEqual(os.environ["AWS_SESSION_TOKEN"], "mfa-token")


@patch("sys.stderr", new_callable=io.StringIO)
class TestChallengers(unittest.TestCase):
    """Test terminal and static challengers."""

    @patch("builtins.input", side_effect=["12345", "abcdef", "", "123456"])
    def test_token_prompt_loops_until_six_digits(self, mock_input, stderr):
        """Invalid codes are rejected and the prompt repeats"""
        self.assertEqual(TerminalChallenger().prompt_token(), "123456")
        self.assertEqual(mock_input.call_count, 4)
        self.assertEqual(stderr.getvalue().count("Please enter a 6-digit MFA token code"), 3)

    @patch("builtins.input", side_effect=["not-an-arn", DEVICE_ARN])
    def test_device_serial_prompt_validates_arn(self, mock_input, _stderr):
        """Manual device entry requires an MFA device ARN"""
        device = TerminalChallenger().prompt_device_serial()
        self.assertEqual(device, MfaDevice(DEVICE_ARN))
        self.assertEqual(mock_input.call_count, 2)

    @patch("builtins.input", return_value="2")
    def test_select_device_by_number(self, _input, _stderr):
        """A numbered choice selects that device"""
        devices = [MfaDevice(DEVICE_ARN), MfaDevice("arn:aws:iam::123456789012:mfa/backup")]
        self.assertEqual(TerminalChallenger().select_device(devices), devices[1])

    @patch("builtins.input", return_value="9")
    def test_select_device_out_of_range_uses_first(self, _input, _stderr):
        devices = [MfaDevice(DEVICE_ARN), MfaDevice("arn:aws:iam::123456789012:mfa/backup")]
        self.assertEqual(TerminalChallenger().select_device(devices), devices[0])

    def test_static_challenger(self, _stderr):
        """StaticChallenger answers from its arguments and never prompts"""
        self.assertEqual(StaticChallenger("654321").prompt_token(), "654321")
        with self.assertRaises(MfaChallengeFailed):
            StaticChallenger("12ab56").prompt_token()
        with self.assertRaises(MfaChallengeFailed):
            StaticChallenger().prompt_token()
        with self.assertRaises(MfaChallengeFailed):
            StaticChallenger("654321").prompt_device_serial()


@patch("sys.stderr", new_callable=io.StringIO)
class TestMfaAuthenticator(unittest.TestCase):
    """Test device discovery, selection and token exchange."""

    def setUp(self):
        self.factory = FakeSessionFactory()
        self.provider = CredentialProvider("us-west-1", session_factory=self.factory)
        self.iam = self.factory.base_client("iam")
        self.sts = self.factory.base_client("sts")
        self.sts.get_session_token.return_value = {"Credentials": sts_credentials()}

    def test_single_device_auto_selected(self, _stderr):
        """One discovered device is used without asking"""
        self.iam.list_mfa_devices.return_value = {"MFADevices": [{"SerialNumber": DEVICE_ARN}]}
        challenger = FakeChallenger(token="554433")

        credential = MfaAuthenticator(self.provider, challenger).authenticate()

        self.assertEqual(credential.access_key_id, "ASIAMFAEXAMPLE")
        self.assertEqual(challenger.selections, [])
        self.assertEqual(challenger.serial_prompts, 0)
        self.iam.list_mfa_devices.assert_called_once_with()
        self.sts.get_session_token.assert_called_once_with(
            SerialNumber=DEVICE_ARN, TokenCode="554433", DurationSeconds=3600
        )

    def test_multiple_devices_ask_challenger(self, _stderr):
        """Several devices are handed to the challenger for selection"""
        backup = "arn:aws:iam::123456789012:mfa/backup"
        self.iam.list_mfa_devices.return_value = {
            "MFADevices": [{"SerialNumber": DEVICE_ARN}, {"SerialNumber": backup}]
        }
        challenger = FakeChallenger(choice=1)

        MfaAuthenticator(self.provider, challenger).authenticate()

        self.assertEqual(len(challenger.selections), 1)
        self.assertEqual(self.sts.get_session_token.call_args.kwargs["SerialNumber"], backup)

    def test_discovery_failure_falls_back_to_manual_entry(self, stderr):
        """A failed device lookup is reported and the serial asked for"""
        self.iam.list_mfa_devices.side_effect = client_error("AccessDenied", "not allowed")
        challenger = FakeChallenger()

        MfaAuthenticator(self.provider, challenger).authenticate()

        self.assertEqual(challenger.serial_prompts, 1)
        self.assertIn("Could not auto-discover MFA devices", stderr.getvalue())

    def test_configured_serial_skips_discovery(self, _stderr):
        """A configured device ARN bypasses IAM discovery"""
        authenticator = MfaAuthenticator(
            self.provider, FakeChallenger(), device_serial=DEVICE_ARN, duration_seconds=900
        )
        authenticator.authenticate()

        self.iam.list_mfa_devices.assert_not_called()
        self.sts.get_session_token.assert_called_once_with(
            SerialNumber=DEVICE_ARN, TokenCode="123456", DurationSeconds=900
        )

    def test_exchange_rejection_is_translated(self, _stderr):
        """A rejected token surfaces as MfaChallengeFailed"""
        self.sts.get_session_token.side_effect = client_error("AccessDenied", "MultiFactorAuthentication failed")
        authenticator = MfaAuthenticator(self.provider, FakeChallenger(), device_serial=DEVICE_ARN)

        with self.assertRaises(MfaChallengeFailed) as ctx:
            authenticator.authenticate()
        self.assertEqual(str(ctx.exception), "invalid MFA token code")

    def test_unknown_exchange_error_propagates(self, _stderr):
        self.sts.get_session_token.side_effect = client_error("Throttling", "Rate exceeded")
        authenticator = MfaAuthenticator(self.provider, FakeChallenger(), device_serial=DEVICE_ARN)

        with self.assertRaises(Exception) as ctx:
            authenticator.authenticate()
        self.assertNotIsInstance(ctx.exception, MfaChallengeFailed)

    def test_missing_credentials_fail(self, _stderr):
        self.sts.get_session_token.return_value = {}
        authenticator = MfaAuthenticator(self.provider, FakeChallenger(), device_serial=DEVICE_ARN)

        with self.assertRaises(MfaChallengeFailed):
            authenticator.authenticate()


@patch("sys.stderr", new_callable=io.StringIO)
class TestCredentialAuthority(unittest.TestCase):
    """Test execute_with_retry and the one-shot MFA budget."""

    def setUp(self):
        self.factory = FakeSessionFactory()
        self.provider = CredentialProvider("us-west-1", session_factory=self.factory)
        self.authenticator = FakeAuthenticator(CREDENTIAL)
        self.authority = CredentialAuthority(self.provider, self.authenticator)

    def test_success_passes_through(self, _stderr):
        """A successful operation runs once and never prompts"""
        operation = CountingOperation(result=42)
        self.assertEqual(self.authority.execute_with_retry(operation), 42)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.authenticator.calls, 0)
        self.assertEqual(self.authority.state, AuthenticationState.UNAUTHENTICATED)

    def test_non_mfa_failure_propagates(self, _stderr):
        """Non-MFA failures are raised unchanged without a challenge"""
        error = client_error("ResourceNotFoundException", "Requested resource not found")
        operation = CountingOperation([error])

        with self.assertRaises(Exception) as ctx:
            self.authority.execute_with_retry(operation)
        self.assertIs(ctx.exception, error)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.authenticator.calls, 0)

    def test_mfa_failure_challenges_and_retries_once(self, stderr):
        """An MFA denial triggers one challenge and exactly one retry"""
        operation = CountingOperation([mfa_denied()], result=["orders"])

        self.assertEqual(self.authority.execute_with_retry(operation), ["orders"])
        self.assertEqual(operation.calls, 2)
        self.assertEqual(self.authenticator.calls, 1)
        self.assertTrue(self.authority.is_authenticated)
        self.assertIs(self.provider.credential, CREDENTIAL)
        self.assertIn("MFA authentication required", stderr.getvalue())

    def test_failed_retry_is_raised(self, _stderr):
        """When the retry fails too, its error propagates and no third call is made"""
        second = mfa_denied("still denied")
        operation = CountingOperation([mfa_denied(), second])

        with self.assertRaises(Exception) as ctx:
            self.authority.execute_with_retry(operation)
        self.assertIs(ctx.exception, second)
        self.assertEqual(operation.calls, 2)
        self.assertEqual(self.authenticator.calls, 1)

    def test_budget_is_spent_after_success(self, _stderr):
        """After authenticating, MFA-shaped failures are not challenged again"""
        self.authority.execute_with_retry(CountingOperation([mfa_denied()]))

        later = CountingOperation([mfa_denied()])
        with self.assertRaises(Exception):
            self.authority.execute_with_retry(later)
        self.assertEqual(later.calls, 1)
        self.assertEqual(self.authenticator.calls, 1)

    def test_failed_exchange_keeps_unauthenticated(self, _stderr):
        """A rejected challenge leaves the state UNAUTHENTICATED and the operation is not retried"""
        self.authenticator.error = MfaChallengeFailed("invalid or expired token")
        operation = CountingOperation([mfa_denied()])

        with self.assertRaises(MfaChallengeFailed):
            self.authority.execute_with_retry(operation)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.authority.state, AuthenticationState.UNAUTHENTICATED)
        self.assertIsNone(self.provider.credential)

    def test_custom_classifier(self, _stderr):
        """The classifier decides which failures trigger the challenge"""
        authority = CredentialAuthority(
            self.provider, self.authenticator, classifier=lambda e: isinstance(e, KeyError)
        )
        operation = CountingOperation([KeyError("x")])
        self.assertEqual(authority.execute_with_retry(operation), "ok")

        never = CredentialAuthority(self.provider, FakeAuthenticator(CREDENTIAL), classifier=lambda e: False)
        with self.assertRaises(Exception):
            never.execute_with_retry(CountingOperation([mfa_denied()]))

    def test_listeners_rebuild_clients(self, _stderr):
        """Registered connectors receive clients built from the new credential"""
        connector = DynamoDBConnector(self.authority)
        before = connector.dynamodb_client
        before.list_tables.side_effect = mfa_denied()

        def list_tables():
            return connector.dynamodb_client.list_tables()

        result = self.authority.execute_with_retry(list_tables)

        self.assertIsNot(connector.dynamodb_client, before)
        self.assertIs(result, connector.dynamodb_client.list_tables.return_value)
        self.assertEqual(self.factory.mfa_calls[-1]["aws_access_key_id"], "ASIAMFAEXAMPLE")

    def test_authenticate_when_authenticated_is_noop(self, _stderr):
        self.authority.authenticate()
        self.assertIs(self.authority.authenticate(), CREDENTIAL)
        self.assertEqual(self.authenticator.calls, 1)

    def test_check_mfa_status(self, _stderr):
        """Assumed-role identities and applied sessions count as MFA"""
        sts = self.factory.base_client("sts")
        sts.get_caller_identity.return_value = {"Arn": "arn:aws:iam::123456789012:user/alice"}
        self.assertFalse(self.authority.check_mfa_status())

        sts.get_caller_identity.return_value = {"Arn": "arn:aws:sts::123456789012:assumed-role/ops/alice"}
        self.assertTrue(self.authority.check_mfa_status())

        sts.get_caller_identity.side_effect = client_error("ExpiredToken", "expired")
        self.assertFalse(self.authority.check_mfa_status())

        self.authority.authenticate()
        self.assertTrue(self.authority.check_mfa_status())


@patch("sys.stderr", new_callable=io.StringIO)
class TestStepUpScenarios(unittest.TestCase):
    """End-to-end step-up with the real authenticator against fake AWS clients."""

    def setUp(self):
        self.factory = FakeSessionFactory()
        self.provider = CredentialProvider(
            "us-west-1", session_factory=self.factory, export_environment=True
        )
        self.iam = self.factory.base_client("iam")
        self.sts = self.factory.base_client("sts")
        self.iam.list_mfa_devices.return_value = {"MFADevices": [{"SerialNumber": DEVICE_ARN}]}
        self.authority = CredentialAuthority(
            self.provider, MfaAuthenticator(self.provider, TerminalChallenger())
        )

    @patch("builtins.input", return_value="554433")
    def test_denied_call_succeeds_after_token(self, _input, _stderr):
        """A denied call prompts for a token, exports the session and succeeds on retry"""
        self.sts.get_session_token.return_value = {"Credentials": sts_credentials()}
        operation = CountingOperation([mfa_denied()], result={"TableNames": ["orders"]})

        with patch.dict(os.environ, {}, clear=True):
            result = self.authority.execute_with_retry(operation)
            self.assertEqual(os.environ["AWS_SESSION_TOKEN"], "mfa-token")

        self.assertEqual(result, {"TableNames": ["orders"]})
        self.sts.get_session_token.assert_called_once_with(
            SerialNumber=DEVICE_ARN, TokenCode="554433", DurationSeconds=3600
        )
        self.assertTrue(self.authority.is_authenticated)

    @patch("builtins.input", return_value="000000")
    def test_rejected_token_reports_reason(self, _input, _stderr):
        """An expired token fails the challenge and a later call may challenge again"""
        self.sts.get_session_token.side_effect = client_error("ValidationError", "Invalid TokenCode value")
        operation = CountingOperation([mfa_denied()])

        with self.assertRaises(MfaChallengeFailed) as ctx:
            self.authority.execute_with_retry(operation)
        self.assertEqual(str(ctx.exception), "invalid or expired token")
        self.assertEqual(operation.calls, 1)
        self.assertEqual(self.authority.state, AuthenticationState.UNAUTHENTICATED)

        self.sts.get_session_token.side_effect = None
        self.sts.get_session_token.return_value = {"Credentials": sts_credentials()}
        self.assertEqual(self.authority.execute_with_retry(CountingOperation([mfa_denied()])), "ok")

    @patch("builtins.input")
    def test_validation_error_never_prompts(self, mock_input, _stderr):
        """A validation failure surfaces directly without any prompt"""
        error = Exception("ValidationException: missing field")
        with self.assertRaises(Exception) as ctx:
            self.authority.execute_with_retry(CountingOperation([error]))
        self.assertIs(ctx.exception, error)
        mock_input.assert_not_called()
        self.sts.get_session_token.assert_not_called()


if __name__ == "__main__":
    unittest.main()
