"""
Database access through a Session Manager bastion host.

Connection details live in SSM parameters written by the infrastructure
stacks; passwords live either in the same parameter or in Secrets Manager.
Tunnels are opened by running ``aws ssm start-session`` with the current
credentials in its environment.
"""

import json
import socket
import subprocess
import sys
import time

from botocore.exceptions import ClientError

from .auth import describe_error
from .errors import ResourceNotFound

DEFAULT_PROJECT = "indicator"
DEFAULT_DATABASE = "indicator"
DEFAULT_LOCAL_PORT = 5433
DEFAULT_ENVIRONMENTS = ("dev", "main")
KNOWN_DATABASES = ("indicator", "platform", "copytrading")

PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"
TUNNEL_READY_TIMEOUT = 30
SESSION_EXPIRY_WARNING_MINUTES = 5


def wait_for_port(port, host="localhost", timeout=TUNNEL_READY_TIMEOUT, process=None):
    """
    Wait until something accepts TCP connections on host:port.

    Args:
        process: Optional Popen serving the port; stop waiting once it exits

    Returns:
        bool: True once the port is open, False after timeout seconds or
        when process has exited
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process is not None and process.poll() is not None:
            return False
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(0.5)
    return False


class DatabaseConnector:
    """Find bastions and databases for an environment and connect to them."""

    def __init__(self, authority, project=DEFAULT_PROJECT):
        self.authority = authority
        self.project = project
        self._build_clients(authority.provider)
        authority.register(self._build_clients)

    def _build_clients(self, provider):
        self.ec2_client = provider.client("ec2")
        self.ssm_client = provider.client("ssm")
        self.secrets_client = provider.client("secretsmanager")

    @property
    def region(self):
        return self.authority.provider.region

    def _get_json_parameter(self, name):
        response = self.authority.execute_with_retry(
            lambda: self.ssm_client.get_parameter(Name=name)
        )
        value = response.get("Parameter", {}).get("Value")
        if not value:
            raise ResourceNotFound(f"SSM parameter '{name}' is empty")
        return json.loads(value)

    def connection_info_parameter(self, environment):
        return f"/{self.project}/bastion/{environment}/connection-info"

    def database_info_parameter(self, environment, database):
        return f"/{self.project}/{database}-api/{environment}/database-environment-variables"

    def get_connection_info(self, environment):
        """Bastion connection info published for the environment (dict)."""
        return self._get_json_parameter(self.connection_info_parameter(environment))

    def get_bastion_instance_id(self, environment):
        """
        Find the bastion EC2 instance for an environment.

        The SSM connection-info parameter is tried first; if it is missing or
        unreadable the instance is looked up by its Name tag.

        Returns:
            str: Instance ID

        Raises:
            ResourceNotFound: No bastion exists for the environment
        """
        try:
            instance_id = self.get_connection_info(environment).get("instanceId")
            if instance_id:
                return instance_id
        except (ClientError, ResourceNotFound, ValueError) as e:
            print(f"⚠ Could not read bastion from SSM ({e}), searching EC2...", file=sys.stderr)

        tag_name = f"{self.project}-bastion-{environment}-host"
        response = self.authority.execute_with_retry(
            lambda: self.ec2_client.describe_instances(
                Filters=[
                    {"Name": "tag:Name", "Values": [tag_name]},
                    {"Name": "instance-state-name", "Values": ["running", "stopped"]},
                ]
            )
        )

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if instance.get("InstanceId"):
                    return instance["InstanceId"]

        raise ResourceNotFound(f"No bastion host found for environment: {environment}")

    def get_database_info(self, environment, database=DEFAULT_DATABASE):
        """
        Connection variables of an application database.

        Returns:
            dict with DATABASE_HOST, DATABASE_PORT, DATABASE_NAME, DATABASE_USER
            and optionally DATABASE_PASSWORD or DATABASE_SECRET_ARN
        """
        name = self.database_info_parameter(environment, database)
        try:
            return self._get_json_parameter(name)
        except ClientError as e:
            code, _ = describe_error(e)
            if code != "ParameterNotFound":
                raise
            raise ResourceNotFound(
                f"Database info not found for {database} in environment: {environment}"
            ) from e

    def get_secret_password(self, secret_arn):
        response = self.authority.execute_with_retry(
            lambda: self.secrets_client.get_secret_value(SecretId=secret_arn)
        )
        secret_string = response.get("SecretString")
        if not secret_string:
            raise ResourceNotFound(f"Secret value not found: {secret_arn}")

        secret = json.loads(secret_string)
        password = secret.get("password") or secret.get("Password") or secret.get("SECRET")
        if not password:
            raise ResourceNotFound(f"Secret '{secret_arn}' has no password field")
        return password

    def get_database_password(self, environment, database=DEFAULT_DATABASE, db_info=None):
        """
        Password of an application database.

        Uses DATABASE_PASSWORD from the SSM parameter when present, otherwise
        reads the Secrets Manager secret named by DATABASE_SECRET_ARN.
        """
        if db_info is None:
            db_info = self.get_database_info(environment, database)

        if db_info.get("DATABASE_PASSWORD"):
            return db_info["DATABASE_PASSWORD"]

        secret_arn = db_info.get("DATABASE_SECRET_ARN")
        if not secret_arn:
            raise ResourceNotFound(
                f"No password or secret configured for {database} in environment: {environment}"
            )
        return self.get_secret_password(secret_arn)

    def session_command(self, instance_id):
        return ["aws", "ssm", "start-session", "--target", instance_id, "--region", self.region]

    def tunnel_command(self, instance_id, remote_host, remote_port, local_port):
        return self.session_command(instance_id) + [
            "--document-name",
            PORT_FORWARD_DOCUMENT,
            "--parameters",
            f"host={remote_host},portNumber={remote_port},localPortNumber={local_port}",
        ]

    def _child_env(self):
        """Credential environment for a session process; warns if the MFA session is about to end."""
        credential = self.authority.provider.credential
        if credential is not None and credential.expires_within(SESSION_EXPIRY_WARNING_MINUTES):
            print(
                f"⚠ MFA session expires at {credential.expiration}, "
                "the connection will drop when it does",
                file=sys.stderr,
            )
        return self.authority.provider.subprocess_env()

    @staticmethod
    def _report_missing(command):
        print(f"Error: '{command[0]}' not found", file=sys.stderr)
        print("Make sure AWS CLI and Session Manager plugin are installed", file=sys.stderr)
        return 127

    def _run(self, command):
        try:
            return subprocess.call(command, env=self._child_env())
        except FileNotFoundError:
            return self._report_missing(command)

    def create_tunnel(self, environment, database=DEFAULT_DATABASE, local_port=DEFAULT_LOCAL_PORT):
        """Forward local_port to the database through the bastion. Blocks until closed."""
        print("🔗 Creating database tunnel via Session Manager...", file=sys.stderr)

        instance_id = self.get_bastion_instance_id(environment)
        db_info = self.get_database_info(environment, database)

        print("✓ Connection details:")
        print(f"   Environment: {environment}")
        print(f"   Database: {database}")
        print(f"   Local port: {local_port}")
        print(f"   Remote database: {db_info['DATABASE_HOST']}:{db_info['DATABASE_PORT']}")
        print(f"   Database name: {db_info['DATABASE_NAME']}")
        print()
        print("   Once the tunnel is established, connect with:")
        print(
            f"   psql -h localhost -p {local_port} "
            f"-d {db_info['DATABASE_NAME']} -U {db_info['DATABASE_USER']}"
        )
        print("   Press Ctrl+C to close the tunnel")
        print()

        command = self.tunnel_command(
            instance_id, db_info["DATABASE_HOST"], db_info["DATABASE_PORT"], local_port
        )
        code = self._run(command)
        if code == 0:
            print("✓ Tunnel closed", file=sys.stderr)
        else:
            print(f"⚠ Tunnel exited with code {code}", file=sys.stderr)
        return code

    def connect_database(self, environment, database=DEFAULT_DATABASE):
        """Open a shell on the bastion and show the psql command to run there."""
        print("🔗 Connecting to database via Session Manager...", file=sys.stderr)

        instance_id = self.get_bastion_instance_id(environment)
        db_info = self.get_database_info(environment, database)

        print("✓ Connection details:")
        print(f"   Environment: {environment}")
        print(
            f"   Database: {db_info['DATABASE_HOST']}:{db_info['DATABASE_PORT']}"
            f"/{db_info['DATABASE_NAME']}"
        )
        print(f"   Username: {db_info['DATABASE_USER']}")
        print()
        print("   Once connected, run:")
        print(
            f"   psql -h {db_info['DATABASE_HOST']} -p {db_info['DATABASE_PORT']} "
            f"-d {db_info['DATABASE_NAME']} -U {db_info['DATABASE_USER']}"
        )
        print()

        return self._run(self.session_command(instance_id))

    def ssh_bastion(self, environment):
        """Open a Session Manager shell on the bastion. No SSH keys involved."""
        print("🔗 Connecting to bastion host via Session Manager...", file=sys.stderr)

        instance_id = self.get_bastion_instance_id(environment)

        print("✓ Connection details:")
        print(f"   Environment: {environment}")
        print(f"   Instance ID: {instance_id}")
        print()

        return self._run(self.session_command(instance_id))

    def connect_with_password(self, environment, database=DEFAULT_DATABASE,
                              local_port=DEFAULT_LOCAL_PORT):
        """
        Open a tunnel in the background and run psql through it.

        The password is fetched automatically and handed to psql via
        PGPASSWORD. The tunnel is terminated when psql exits.

        Returns:
            int: psql exit code
        """
        instance_id = self.get_bastion_instance_id(environment)
        db_info = self.get_database_info(environment, database)
        password = self.get_database_password(environment, database, db_info=db_info)

        env = self._child_env()
        command = self.tunnel_command(
            instance_id, db_info["DATABASE_HOST"], db_info["DATABASE_PORT"], local_port
        )

        print(f"🔗 Starting tunnel on port {local_port}...", file=sys.stderr)
        try:
            tunnel = subprocess.Popen(
                command, env=env, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except FileNotFoundError:
            return self._report_missing(command)

        try:
            if not wait_for_port(local_port, process=tunnel):
                if tunnel.poll() is not None:
                    print(f"Error: Tunnel exited with code {tunnel.returncode}", file=sys.stderr)
                else:
                    print(
                        f"Error: Tunnel did not open port {local_port} "
                        f"within {TUNNEL_READY_TIMEOUT}s",
                        file=sys.stderr,
                    )
                return 1
            print("✓ Tunnel established", file=sys.stderr)

            env["PGPASSWORD"] = password
            psql = [
                "psql",
                "-h", "localhost",
                "-p", str(local_port),
                "-d", db_info["DATABASE_NAME"],
                "-U", db_info["DATABASE_USER"],
            ]
            try:
                return subprocess.call(psql, env=env)
            except FileNotFoundError:
                print("Error: 'psql' not found, install the PostgreSQL client", file=sys.stderr)
                return 127
        finally:
            tunnel.terminate()
            tunnel.wait()
            print("✓ Tunnel closed", file=sys.stderr)

    def discover_databases(self, environment, candidates=KNOWN_DATABASES):
        """
        Check which application databases are published for an environment.

        Returns:
            list: (database, db_info) tuples for every candidate found
        """
        found = []
        for database in candidates:
            try:
                found.append((database, self.get_database_info(environment, database)))
            except ResourceNotFound:
                continue
        return found

    def show_databases(self, environment):
        print(f"🔍 Discovering databases for {environment}...", file=sys.stderr)
        found = self.discover_databases(environment)
        if not found:
            print(f"⚠ No databases found for environment: {environment}")
            return found

        print(f"✓ Found {len(found)} database(s):")
        for database, db_info in found:
            print(f"  • {database}")
            print(f"    Host: {db_info.get('DATABASE_HOST')}:{db_info.get('DATABASE_PORT')}")
            print(f"    Name: {db_info.get('DATABASE_NAME')}")
            print(f"    User: {db_info.get('DATABASE_USER')}")
        return found

    def show_info(self, environment):
        """Print connection information; fall back to the bare instance ID."""
        print(f"📋 Connection Information - {environment.upper()}")
        print()

        try:
            info = self.get_connection_info(environment)
        except (ClientError, ResourceNotFound, ValueError) as e:
            print(f"⚠ Error fetching connection info: {e}", file=sys.stderr)
            instance_id = self.get_bastion_instance_id(environment)
            print("Basic connection info:")
            print(f"   Instance ID: {instance_id}")
            print(f"   Manual command: aws ssm start-session --target {instance_id}")
            return

        print("Bastion Host:")
        print(f"   Instance ID: {info.get('instanceId')}")
        print(f"   Access Method: {info.get('accessMethod', 'Session Manager')}")
        print(f"   Region: {info.get('region', self.region)}")
        print()
        if info.get("sessionCommand"):
            print("Session Manager Commands:")
            print(f"   Connect: {info['sessionCommand']}")
            if info.get("portForwardCommand"):
                port_forward = info["portForwardCommand"].replace(
                    "DATABASE_ENDPOINT", "<DATABASE_ENDPOINT>"
                )
                print(f"   Port Forward: {port_forward}")
            print()
        print("CLI Tool Commands:")
        print(f"   Tunnel: keyless-db tunnel {environment}")
        print(f"   Connect: keyless-db connect {environment}")
        print(f"   SSH: keyless-db ssh {environment}")
        print()

        if info.get("sshEnabled"):
            print("⚠ SSH access is enabled (legacy mode)")
        else:
            print("✓ Session Manager only (no SSH keys required)")
        if info.get("note"):
            print(f"   Note: {info['note']}")

    def list_environments(self, environments=DEFAULT_ENVIRONMENTS):
        """
        Report which environments have a reachable bastion.

        Returns:
            dict: environment -> instance ID (None when unavailable)
        """
        print("📋 Available Environments")
        print()

        result = {}
        for environment in environments:
            try:
                instance_id = self.get_bastion_instance_id(environment)
            except (ClientError, ResourceNotFound) as e:
                result[environment] = None
                print(f"✗ {environment.upper()}")
                print("   Status: Not available")
                print(f"   Error: {e}")
                print()
                continue

            result[environment] = instance_id
            print(f"✓ {environment.upper()}")
            print(f"   Instance: {instance_id}")
            print(f"   Commands: keyless-db tunnel {environment}, keyless-db connect {environment}")
            print()
        return result
