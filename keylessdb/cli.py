"""
Command-line interface for keyless-db.
"""

import argparse
import os
import shlex
import sys

from botocore.exceptions import BotoCoreError, ClientError

from . import __version__
from .auth import (
    DEFAULT_SESSION_DURATION,
    CredentialAuthority,
    CredentialProvider,
    MfaAuthenticator,
    StaticChallenger,
    TerminalChallenger,
    describe_error,
)
from .database import (
    DEFAULT_DATABASE,
    DEFAULT_ENVIRONMENTS,
    DEFAULT_LOCAL_PORT,
    DEFAULT_PROJECT,
    DatabaseConnector,
)
from .dynamodb import DEFAULT_LIMIT, DynamoDBConnector
from .errors import KeylessDbError, MfaChallengeFailed
from .migration import MigrationManager

DEFAULT_REGION = "us-west-1"


def resolve_region(args):
    return (
        args.region
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_REGION
    )


def resolve_project(args):
    return args.project or os.environ.get("KEYLESS_DB_PROJECT") or DEFAULT_PROJECT


def resolve_session_duration():
    value = os.environ.get("KEYLESS_DB_SESSION_DURATION")
    if not value:
        return DEFAULT_SESSION_DURATION
    try:
        return int(value)
    except ValueError:
        raise KeylessDbError(
            f"KEYLESS_DB_SESSION_DURATION must be a number of seconds, got '{value}'"
        )


def build_authority(args):
    """
    Build the CredentialAuthority for one CLI invocation.

    Applied MFA credentials are also exported to the process environment so
    that child processes (aws ssm, psql) run with them.
    """
    provider = CredentialProvider(
        resolve_region(args),
        profile=args.profile,
        export_environment=True,
    )
    if args.mfa_token:
        challenger = StaticChallenger(args.mfa_token)
    else:
        challenger = TerminalChallenger()
    authenticator = MfaAuthenticator(
        provider,
        challenger,
        device_serial=args.mfa_serial or os.environ.get("KEYLESS_DB_MFA_SERIAL"),
        duration_seconds=resolve_session_duration(),
    )
    return CredentialAuthority(provider, authenticator)


def cmd_tunnel(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    return connector.create_tunnel(args.environment, args.database, args.port)


def cmd_connect(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    return connector.connect_database(args.environment, args.database)


def cmd_ssh(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    return connector.ssh_bastion(args.environment)


def cmd_info(args, authority):
    DatabaseConnector(authority, resolve_project(args)).show_info(args.environment)
    return 0


def cmd_list(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    connector.list_environments(args.environments or DEFAULT_ENVIRONMENTS)
    return 0


def cmd_psql(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    return connector.connect_with_password(args.environment, args.database, args.port)


def cmd_databases(args, authority):
    DatabaseConnector(authority, resolve_project(args)).show_databases(args.environment)
    return 0


def cmd_password(args, authority):
    connector = DatabaseConnector(authority, resolve_project(args))
    db_info = connector.get_database_info(args.environment, args.database)
    password = connector.get_database_password(args.environment, args.database, db_info=db_info)

    print("✓ Database password retrieved:", file=sys.stderr)
    print(password)
    print(file=sys.stderr)
    print("DATABASE_URL for manual configuration:", file=sys.stderr)
    print(
        f"DATABASE_URL=postgres://{db_info.get('DATABASE_USER')}:{password}"
        f"@localhost:{DEFAULT_LOCAL_PORT}/{db_info.get('DATABASE_NAME')}",
        file=sys.stderr,
    )
    return 0


def cmd_auth(args, authority):
    """Run the MFA challenge and print shell exports (for eval)."""
    credential = authority.authenticate()
    for name, value in credential.as_environ().items():
        print(f"export {name}={shlex.quote(value)}")
    if credential.expiration:
        print(f"✓ Credentials expire at: {credential.expiration}", file=sys.stderr)
    return 0


def cmd_whoami(args, authority):
    identity = authority.execute_with_retry(authority.provider.caller_identity)
    print(f"Account: {identity.get('Account')}")
    print(f"Arn: {identity.get('Arn')}")
    print(f"UserId: {identity.get('UserId')}")
    mfa_session = authority.check_mfa_status()
    print(f"Temporary session: {'yes' if mfa_session else 'no'}")
    return 0


def cmd_dynamo_list_tables(args, authority):
    DynamoDBConnector(authority).list_tables()
    return 0


def cmd_dynamo_describe(args, authority):
    DynamoDBConnector(authority).describe_table(args.table_name)
    return 0


def cmd_dynamo_scan(args, authority):
    DynamoDBConnector(authority).scan_table(args.table_name, args.limit)
    return 0


def cmd_dynamo_query(args, authority):
    DynamoDBConnector(authority).query_table(args.table_name, args.key_condition, args.limit)
    return 0


def cmd_dynamo_get_item(args, authority):
    DynamoDBConnector(authority).get_item(args.table_name, args.key)
    return 0


def cmd_migrate_targets(args, authority):
    MigrationManager(authority, resolve_project(args)).show_target_databases(args.environment)
    return 0


def cmd_migrate_start(args, authority):
    MigrationManager(authority, resolve_project(args)).start_migration(
        args.environment, assume_yes=args.yes
    )
    return 0


def cmd_migrate_stop(args, authority):
    MigrationManager(authority, resolve_project(args)).stop_migration(
        args.environment, assume_yes=args.yes
    )
    return 0


def cmd_migrate_status(args, authority):
    MigrationManager(authority, resolve_project(args)).show_migration_status(args.environment)
    return 0


def cmd_migrate_validate(args, authority):
    MigrationManager(authority, resolve_project(args)).validate_migration(args.environment)
    return 0


def cmd_migrate_cleanup(args, authority):
    MigrationManager(authority, resolve_project(args)).cleanup_migration(
        args.environment, assume_yes=args.yes, wait=not args.no_wait
    )
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="keyless-db",
        description="Keyless database access and migrations through AWS Session Manager",
        epilog="Examples:\n"
        "  keyless-db tunnel dev                   # Forward localhost:5433 to the dev database\n"
        "  keyless-db psql main -d platform        # psql with automatic tunnel and password\n"
        "  keyless-db dynamo scan orders -l 10     # Scan a table, sensitive fields hidden\n"
        "  keyless-db migrate status dev           # DMS task status and table statistics\n"
        "  eval $(keyless-db auth)                 # Export an MFA session into the shell",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--region",
        default=None,
        help=f"AWS region (defaults to AWS_REGION, then AWS_DEFAULT_REGION, then {DEFAULT_REGION})",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="AWS profile with the long-lived credentials (boto3 falls back to AWS_PROFILE)",
    )
    parser.add_argument(
        "--project",
        default=None,
        help=f"Resource naming prefix for stacks, parameters and bastion tags "
        f"(defaults to KEYLESS_DB_PROJECT, then '{DEFAULT_PROJECT}')",
    )
    parser.add_argument(
        "--mfa-serial",
        metavar="ARN",
        default=None,
        help="MFA device ARN, skips device discovery (defaults to KEYLESS_DB_MFA_SERIAL)",
    )
    parser.add_argument(
        "--mfa-token",
        metavar="CODE",
        default=None,
        help="MFA token code for non-interactive use; without it you are prompted when needed",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    def add_database_options(sub, with_port=False):
        sub.add_argument("environment", help="Environment (dev/main)")
        sub.add_argument(
            "-d",
            "--database",
            default=DEFAULT_DATABASE,
            help=f"Application database (default: {DEFAULT_DATABASE})",
        )
        if with_port:
            sub.add_argument(
                "-p",
                "--port",
                type=int,
                default=DEFAULT_LOCAL_PORT,
                help=f"Local port for the tunnel (default: {DEFAULT_LOCAL_PORT})",
            )

    sub = commands.add_parser("tunnel", help="Forward a local port to a database via Session Manager")
    add_database_options(sub, with_port=True)
    sub.set_defaults(handler=cmd_tunnel)

    sub = commands.add_parser("connect", help="Open a bastion shell with the database psql command")
    add_database_options(sub)
    sub.set_defaults(handler=cmd_connect)

    sub = commands.add_parser("ssh", help="Open a shell on the bastion host via Session Manager")
    sub.add_argument("environment", help="Environment (dev/main)")
    sub.set_defaults(handler=cmd_ssh)

    sub = commands.add_parser("info", help="Show connection information for an environment")
    sub.add_argument("environment", help="Environment (dev/main)")
    sub.set_defaults(handler=cmd_info)

    sub = commands.add_parser("list", help="List environments with a reachable bastion")
    sub.add_argument(
        "environments",
        nargs="*",
        help=f"Environments to check (default: {' '.join(DEFAULT_ENVIRONMENTS)})",
    )
    sub.set_defaults(handler=cmd_list)

    sub = commands.add_parser("psql", help="psql through an automatic tunnel and password lookup")
    add_database_options(sub, with_port=True)
    sub.set_defaults(handler=cmd_psql)

    sub = commands.add_parser("databases", help="Discover databases published for an environment")
    sub.add_argument("environment", help="Environment (dev/main)")
    sub.set_defaults(handler=cmd_databases)

    sub = commands.add_parser("password", help="Print a database password for manual configuration")
    add_database_options(sub)
    sub.set_defaults(handler=cmd_password)

    sub = commands.add_parser("auth", help="Authenticate with MFA and print shell export statements")
    sub.set_defaults(handler=cmd_auth)

    sub = commands.add_parser("whoami", help="Show the current AWS identity")
    sub.set_defaults(handler=cmd_whoami)

    dynamo = commands.add_parser(
        "dynamo", help="DynamoDB operations (sensitive fields are always hidden)"
    )
    dynamo_commands = dynamo.add_subparsers(dest="dynamo_command", metavar="COMMAND")
    dynamo_commands.required = True

    sub = dynamo_commands.add_parser("list-tables", help="List all DynamoDB tables")
    sub.set_defaults(handler=cmd_dynamo_list_tables)

    sub = dynamo_commands.add_parser("describe", help="Show key schema and indexes of a table")
    sub.add_argument("table_name")
    sub.set_defaults(handler=cmd_dynamo_describe)

    sub = dynamo_commands.add_parser("scan", help="Scan a table (reads sequentially, expensive)")
    sub.add_argument("table_name")
    sub.add_argument("-l", "--limit", type=int, default=DEFAULT_LIMIT)
    sub.set_defaults(handler=cmd_dynamo_scan)

    sub = dynamo_commands.add_parser("query", help='Query by partition key, e.g. "id = value"')
    sub.add_argument("table_name")
    sub.add_argument("key_condition")
    sub.add_argument("-l", "--limit", type=int, default=DEFAULT_LIMIT)
    sub.set_defaults(handler=cmd_dynamo_query)

    sub = dynamo_commands.add_parser("get-item", help='Get one item, key "name:value" or JSON')
    sub.add_argument("table_name")
    sub.add_argument("key")
    sub.set_defaults(handler=cmd_dynamo_get_item)

    migrate = commands.add_parser("migrate", help="DMS database migration control")
    migrate_commands = migrate.add_subparsers(dest="migrate_command", metavar="COMMAND")
    migrate_commands.required = True

    for name, handler, help_text, confirms in (
        ("targets", cmd_migrate_targets, "List target databases of the storage stack", False),
        ("start", cmd_migrate_start, "Start the replication task (full load + CDC)", True),
        ("stop", cmd_migrate_stop, "Stop the replication task", True),
        ("status", cmd_migrate_status, "Show task status and table statistics", False),
        ("validate", cmd_migrate_validate, "Validate migrated data from table statistics", False),
        ("cleanup", cmd_migrate_cleanup, "Delete the migration stack", True),
    ):
        sub = migrate_commands.add_parser(name, help=help_text)
        sub.add_argument("environment", help="Environment (dev/main)")
        if confirms:
            sub.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
        if name == "cleanup":
            sub.add_argument(
                "--no-wait", action="store_true", help="Return without waiting for deletion"
            )
        sub.set_defaults(handler=handler)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        authority = build_authority(args)
        return args.handler(args, authority) or 0
    except MfaChallengeFailed as e:
        print(f"Error: MFA authentication failed: {e}", file=sys.stderr)
        return 1
    except (KeylessDbError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ClientError as e:
        code, message = describe_error(e)
        print(f"Error: AWS request failed ({code})", file=sys.stderr)
        print(f"Details: {message}", file=sys.stderr)
        return 1
    except BotoCoreError as e:
        print("Error: AWS connection failed", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
