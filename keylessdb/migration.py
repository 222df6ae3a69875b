"""
Control of DMS database migrations.

The migration infrastructure (replication instance, endpoints, task) is
deployed by a CloudFormation stack named ``{project}-migration-stack-{env}``;
this module only finds the task through the stack outputs and drives it.
"""

import sys
from dataclasses import dataclass
from datetime import datetime

from botocore.exceptions import ClientError

from .auth import describe_error
from .database import DEFAULT_PROJECT
from .errors import ResourceNotFound
from .prompts import confirm

TABLE_COMPLETED = "Table completed"


@dataclass
class TargetDatabase:
    name: str
    friendly_name: str
    secret_arn: str
    endpoint: str = None
    port: str = None


@dataclass
class MigrationStatus:
    task_arn: str
    task_id: str
    status: str
    progress: int = 0
    cdc_start_date: datetime = None
    stop_reason: str = None
    creation_date: datetime = None
    start_date: datetime = None


@dataclass
class TableStatistics:
    table_name: str
    table_state: str
    full_load_rows: int = 0
    full_load_error_rows: int = 0
    last_update_time: datetime = None


@dataclass
class ValidationSummary:
    total_tables: int
    completed_tables: int
    total_rows: int
    total_errors: int
    tables_with_errors: list

    @property
    def completion_rate(self):
        if not self.total_tables:
            return 0.0
        return self.completed_tables / self.total_tables * 100

    @property
    def error_rate(self):
        if not self.total_rows:
            return 0.0
        return self.total_errors / self.total_rows * 100

    @property
    def is_complete(self):
        return self.completion_rate >= 100 and self.total_errors == 0


def summarize_statistics(stats):
    """
    Aggregate per-table statistics into a validation summary.

    Args:
        stats: List of TableStatistics

    Returns:
        ValidationSummary
    """
    return ValidationSummary(
        total_tables=len(stats),
        completed_tables=sum(1 for s in stats if s.table_state == TABLE_COMPLETED),
        total_rows=sum(s.full_load_rows for s in stats),
        total_errors=sum(s.full_load_error_rows for s in stats),
        tables_with_errors=[s for s in stats if s.full_load_error_rows > 0],
    )


def _format_date(value):
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


class MigrationManager:
    """Find and drive the DMS replication task of an environment."""

    def __init__(self, authority, project=DEFAULT_PROJECT):
        self.authority = authority
        self.project = project
        self._build_clients(authority.provider)
        authority.register(self._build_clients)

    def _build_clients(self, provider):
        self.cfn_client = provider.client("cloudformation")
        self.dms_client = provider.client("dms")

    def storage_stack_name(self, environment):
        return f"{self.project}-storage-infra-{environment}"

    def migration_stack_name(self, environment):
        return f"{self.project}-migration-stack-{environment}"

    def get_stack(self, stack_name):
        """
        Describe a CloudFormation stack.

        Returns:
            dict: The stack, or None if it does not exist
        """
        try:
            response = self.authority.execute_with_retry(
                lambda: self.cfn_client.describe_stacks(StackName=stack_name)
            )
        except ClientError as e:
            code, message = describe_error(e)
            if code == "ValidationError" and "does not exist" in message:
                return None
            raise

        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    @staticmethod
    def stack_outputs(stack):
        return {o["OutputKey"]: o.get("OutputValue") for o in stack.get("Outputs", [])}

    def discover_target_databases(self, environment):
        """
        List the databases published by the storage stack.

        Each ``<Name>DatabaseSecretArn`` output yields one target, with
        ``<Name>DatabaseEndpoint`` and ``<Name>DatabasePort`` when present.
        """
        stack_name = self.storage_stack_name(environment)
        stack = self.get_stack(stack_name)
        if stack is None:
            print(f"⚠ Storage infrastructure stack not found: {stack_name}", file=sys.stderr)
            return []

        outputs = self.stack_outputs(stack)
        targets = []
        for key, value in sorted(outputs.items()):
            if not key.endswith("DatabaseSecretArn") or not value:
                continue
            prefix = key[: -len("DatabaseSecretArn")]
            targets.append(
                TargetDatabase(
                    name=prefix.lower(),
                    friendly_name=f"{prefix} Database",
                    secret_arn=value,
                    endpoint=outputs.get(f"{prefix}DatabaseEndpoint"),
                    port=outputs.get(f"{prefix}DatabasePort"),
                )
            )
        return targets

    def show_target_databases(self, environment):
        print("🔍 Discovering available target databases...", file=sys.stderr)
        targets = self.discover_target_databases(environment)
        if not targets:
            print("No target databases found")
            return targets

        for target in targets:
            print(f"✓ {target.friendly_name} ({target.name})")
            if target.endpoint:
                print(f"   Endpoint: {target.endpoint}:{target.port or '5432'}")
            print(f"   Secret: {target.secret_arn}")
        return targets

    def get_migration_task_arn(self, environment):
        """
        Replication task ARN from the migration stack outputs.

        Raises:
            ResourceNotFound: Stack or MigrationTaskArn output missing
        """
        stack = self.get_stack(self.migration_stack_name(environment))
        if stack is None:
            raise ResourceNotFound(f"Migration stack not found for environment: {environment}")

        task_arn = self.stack_outputs(stack).get("MigrationTaskArn")
        if not task_arn:
            raise ResourceNotFound(
                f"Migration task ARN not found in stack outputs for environment: {environment}"
            )
        return task_arn

    def get_migration_status(self, environment):
        task_arn = self.get_migration_task_arn(environment)
        response = self.authority.execute_with_retry(
            lambda: self.dms_client.describe_replication_tasks(
                Filters=[{"Name": "replication-task-arn", "Values": [task_arn]}]
            )
        )

        tasks = response.get("ReplicationTasks", [])
        if not tasks:
            raise ResourceNotFound(f"Migration task not found: {task_arn}")

        task = tasks[0]
        stats = task.get("ReplicationTaskStats", {})
        return MigrationStatus(
            task_arn=task["ReplicationTaskArn"],
            task_id=task.get("ReplicationTaskIdentifier", ""),
            status=task.get("Status", "unknown"),
            progress=stats.get("FullLoadProgressPercent", 0),
            cdc_start_date=stats.get("StartDate"),
            stop_reason=task.get("StopReason"),
            creation_date=task.get("ReplicationTaskCreationDate"),
            start_date=task.get("ReplicationTaskStartDate"),
        )

    def get_table_statistics(self, task_arn):
        """All table statistics of a replication task, following pagination."""
        stats = []
        kwargs = {"ReplicationTaskArn": task_arn}
        while True:
            response = self.authority.execute_with_retry(
                lambda: self.dms_client.describe_table_statistics(**kwargs)
            )
            for entry in response.get("TableStatistics", []):
                stats.append(
                    TableStatistics(
                        table_name=entry.get("TableName", ""),
                        table_state=entry.get("TableState", ""),
                        full_load_rows=entry.get("FullLoadRows", 0),
                        full_load_error_rows=entry.get("FullLoadErrorRows", 0),
                        last_update_time=entry.get("LastUpdateTime"),
                    )
                )
            if not response.get("Marker"):
                return stats
            kwargs = {"ReplicationTaskArn": task_arn, "Marker": response["Marker"]}

    def start_migration(self, environment, assume_yes=False):
        """
        Start the replication task (full load + CDC) after confirmation.

        Returns:
            bool: True if the task was started
        """
        print("🚀 Starting database migration...", file=sys.stderr)
        task_arn = self.get_migration_task_arn(environment)
        print(f"   Task ARN: {task_arn}", file=sys.stderr)

        if not assume_yes and not confirm("Start full database migration (full-load + CDC)?"):
            print("Migration start cancelled.", file=sys.stderr)
            return False

        self.authority.execute_with_retry(
            lambda: self.dms_client.start_replication_task(
                ReplicationTaskArn=task_arn,
                StartReplicationTaskType="start-replication",
            )
        )
        print("✓ Migration task started successfully!")
        print(f"  Monitor progress with: keyless-db migrate status {environment}")
        return True

    def stop_migration(self, environment, assume_yes=False):
        """Stop the replication task after confirmation."""
        print("🛑 Stopping database migration...", file=sys.stderr)
        task_arn = self.get_migration_task_arn(environment)

        if not assume_yes and not confirm(
            "Stop the migration task? This will halt all data replication."
        ):
            print("Migration stop cancelled.", file=sys.stderr)
            return False

        self.authority.execute_with_retry(
            lambda: self.dms_client.stop_replication_task(ReplicationTaskArn=task_arn)
        )
        print("✓ Migration task stopped successfully!")
        return True

    def show_table_statistics(self, task_arn):
        try:
            stats = self.get_table_statistics(task_arn)
        except ClientError as e:
            print(f"⚠ Could not retrieve table statistics: {e}", file=sys.stderr)
            return []

        if not stats:
            print("   No table statistics available yet")
            return stats

        print("Table Statistics:")
        print()
        print("   " + "Table Name".ljust(30) + "State".ljust(20) + "Rows".ljust(10) + "Errors")
        print("   " + "-" * 70)
        for stat in stats:
            print(
                "   "
                + stat.table_name.ljust(30)
                + stat.table_state.ljust(20)
                + str(stat.full_load_rows).ljust(10)
                + str(stat.full_load_error_rows)
            )
        print()

        summary = summarize_statistics(stats)
        print("Summary:")
        print(f"   Total Tables: {summary.total_tables}")
        print(f"   Total Rows: {summary.total_rows:,}")
        print(f"   Total Errors: {summary.total_errors}")
        print()
        return stats

    def show_migration_status(self, environment):
        print(f"📊 Migration Status - {environment.upper()}")
        print()

        status = self.get_migration_status(environment)
        print("Task Information:")
        print(f"   Task ID: {status.task_id}")
        print(f"   Status: {status.status}")
        print(f"   Progress: {status.progress}%")
        if status.creation_date:
            print(f"   Created: {_format_date(status.creation_date)}")
        if status.start_date:
            print(f"   Started: {_format_date(status.start_date)}")
        if status.cdc_start_date:
            print(f"   CDC Started: {_format_date(status.cdc_start_date)}")
        if status.stop_reason:
            print(f"   Stop Reason: {status.stop_reason}")
        print()

        if status.status in ("running", "stopped"):
            self.show_table_statistics(status.task_arn)

        print("Available Commands:")
        if status.status in ("ready", "stopped"):
            print(f"   Start: keyless-db migrate start {environment}")
        if status.status == "running":
            print(f"   Stop: keyless-db migrate stop {environment}")
        print(f"   Validate: keyless-db migrate validate {environment}")
        print(f"   Cleanup: keyless-db migrate cleanup {environment}")
        return status

    def validate_migration(self, environment):
        """
        Print a validation report built from the table statistics.

        Returns:
            ValidationSummary, or None if the task is neither running nor stopped
        """
        print("🔍 Validating migration data...", file=sys.stderr)
        status = self.get_migration_status(environment)
        if status.status not in ("running", "stopped"):
            print("⚠ Migration task must be running or stopped to validate data")
            return None

        summary = summarize_statistics(self.get_table_statistics(status.task_arn))

        print("Migration Validation Report:")
        print()
        print(f"   Completion Rate: {summary.completion_rate:.1f}%")
        print(f"   Error Rate: {summary.error_rate:.2f}%")
        print(f"   Tables Completed: {summary.completed_tables} / {summary.total_tables}")
        print(f"   Total Rows Migrated: {summary.total_rows:,}")
        print(f"   Total Errors: {summary.total_errors}")
        print()

        if summary.tables_with_errors:
            print("⚠ Tables with Errors:")
            for stat in summary.tables_with_errors:
                print(f"   {stat.table_name}: {stat.full_load_error_rows} errors")
            print()

        print("Recommendations:")
        if summary.completion_rate < 100:
            print("   • Migration still in progress - wait for completion before cutover")
        if summary.total_errors > 0:
            print(f"   • Review error logs in CloudWatch: /aws/dms/task/migration-task-{environment}")
            print("   • Consider manual data fixes for errored records")
        if summary.is_complete:
            print("   • Migration completed successfully - ready for application cutover")
            print(f"   • Consider stopping CDC when ready: keyless-db migrate stop {environment}")
        return summary

    def cleanup_migration(self, environment, assume_yes=False, wait=True):
        """
        Delete the migration stack and with it all DMS resources.

        Refuses while the task is running.

        Returns:
            bool: True if deletion was requested
        """
        print("🧹 Cleaning up migration infrastructure...", file=sys.stderr)
        try:
            status = self.get_migration_status(environment)
        except ResourceNotFound:
            print("⚠ Migration stack not found - may already be cleaned up")
            return False

        if status.status == "running":
            print("✗ Cannot cleanup - migration task is still running")
            print(f"   Stop the migration first: keyless-db migrate stop {environment}")
            return False

        if not assume_yes and not confirm(
            "This will destroy all migration infrastructure. Are you sure?"
        ):
            print("Cleanup cancelled.", file=sys.stderr)
            return False

        stack_name = self.migration_stack_name(environment)
        self.authority.execute_with_retry(
            lambda: self.cfn_client.delete_stack(StackName=stack_name)
        )
        print(f"✓ Deletion of stack '{stack_name}' requested", file=sys.stderr)

        if wait:
            print("   Waiting for stack deletion to complete...", file=sys.stderr)
            self.authority.execute_with_retry(
                lambda: self.cfn_client.get_waiter("stack_delete_complete").wait(
                    StackName=stack_name
                )
            )
            print("✓ Migration infrastructure cleaned up successfully!")
        return True
