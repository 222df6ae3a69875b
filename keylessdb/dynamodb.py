"""
Read-only DynamoDB access with sensitive fields masked.
"""

import base64
import json
import re
import sys
from decimal import Decimal

from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

SENSITIVE_FIELDS = frozenset(
    [
        "encrypted_api_key",
        "encrypted_secret_key",
        "dek_encrypted",
        "api_key",
        "secret_key",
        "passphrase",
        "password",
        "token",
        "access_token",
        "refresh_token",
    ]
)
HIDDEN = "[HIDDEN]"
DEFAULT_LIMIT = 20

KEY_CONDITION_PATTERN = re.compile(r"""^\s*(\w+)\s*=\s*['"]?([^'"]+?)['"]?\s*$""")

_deserializer = TypeDeserializer()
_serializer = TypeSerializer()


def filter_sensitive_fields(items):
    """
    Mask sensitive attributes.

    Args:
        items: List of deserialised items (dicts)

    Returns:
        list: Copies of the items with truthy sensitive values replaced by [HIDDEN]
    """
    filtered = []
    for item in items:
        copy = dict(item)
        for name in SENSITIVE_FIELDS:
            if copy.get(name):
                copy[name] = HIDDEN
        filtered.append(copy)
    return filtered


def parse_key_condition(key_condition):
    """
    Parse a simple equality condition such as ``tenant_id = 5010``.

    Returns:
        tuple: (attribute_name, value)

    Raises:
        ValueError: The condition is not of the form "name = value"
    """
    match = KEY_CONDITION_PATTERN.match(key_condition)
    if not match:
        raise ValueError('Invalid key condition format. Use: "keyName = value"')
    return match.group(1), match.group(2)


def parse_item_key(key):
    """
    Parse an item key given as ``name:value`` or as a JSON object.

    Raises:
        ValueError: Neither format matches
    """
    key = key.strip()
    if key.startswith("{"):
        try:
            parsed = json.loads(key)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON key: {e}")
        if not isinstance(parsed, dict) or not parsed:
            raise ValueError("JSON key must be a non-empty object")
        return parsed

    name, sep, value = key.partition(":")
    if not sep or not name or not value:
        raise ValueError('Invalid key format. Use: "keyName:value" or JSON format')
    return {name: value}


def to_attribute_value(value, attribute_type=None):
    """Serialise a key value, honouring the table's declared attribute type."""
    if attribute_type == "N":
        return {"N": str(value)}
    if attribute_type == "S":
        return {"S": str(value)}
    return _serializer.serialize(value)


def deserialize_item(item):
    return {name: _deserializer.deserialize(value) for name, value in item.items()}


def _json_default(value):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, Binary):
        return base64.b64encode(value.value).decode()
    return str(value)


def to_json(items):
    return json.dumps(items, indent=2, default=_json_default)


def format_size(size_bytes):
    if not size_bytes:
        return "Unknown"
    return f"{size_bytes / 1024:.2f} KB"


class DynamoDBConnector:
    """List, describe and read DynamoDB tables. Every call may step up to MFA."""

    def __init__(self, authority):
        self.authority = authority
        self._build_clients(authority.provider)
        authority.register(self._build_clients)

    def _build_clients(self, provider):
        self.dynamodb_client = provider.client("dynamodb")

    def _call(self, method, **kwargs):
        return self.authority.execute_with_retry(
            lambda: getattr(self.dynamodb_client, method)(**kwargs)
        )

    def get_table_names(self):
        names = []
        kwargs = {}
        while True:
            response = self._call("list_tables", **kwargs)
            names.extend(response.get("TableNames", []))
            if not response.get("LastEvaluatedTableName"):
                return names
            kwargs["ExclusiveStartTableName"] = response["LastEvaluatedTableName"]

    def get_table(self, table_name):
        return self._call("describe_table", TableName=table_name)["Table"]

    def _attribute_types(self, table_name):
        table = self.get_table(table_name)
        return {
            attribute["AttributeName"]: attribute["AttributeType"]
            for attribute in table.get("AttributeDefinitions", [])
        }

    def list_tables(self):
        print("📋 Listing DynamoDB tables...", file=sys.stderr)
        names = self.get_table_names()
        if not names:
            print("No DynamoDB tables found")
            return names

        print(f"✓ Found {len(names)} tables:")
        for name in names:
            print()
            print(f"📊 {name}")
            try:
                table = self.get_table(name)
            except ClientError as e:
                print(f"   Error getting details: {e}")
                continue
            created = table.get("CreationDateTime")
            print(f"   Status: {table.get('TableStatus')}")
            print(f"   Items: {table.get('ItemCount', 'Unknown')}")
            print(f"   Size: {format_size(table.get('TableSizeBytes'))}")
            print(f"   Created: {created.isoformat() if created else 'Unknown'}")
        return names

    def describe_table(self, table_name):
        print(f"📊 Describing table: {table_name}...", file=sys.stderr)
        table = self.get_table(table_name)
        created = table.get("CreationDateTime")

        print("✓ Table details:")
        print(f"Name: {table.get('TableName')}")
        print(f"Status: {table.get('TableStatus')}")
        print(f"Items: {table.get('ItemCount', 'Unknown')}")
        print(f"Size: {format_size(table.get('TableSizeBytes'))}")
        print(f"Created: {created.isoformat() if created else 'Unknown'}")

        if table.get("KeySchema"):
            print()
            print("Key Schema:")
            for key in table["KeySchema"]:
                print(f"  {key['AttributeName']}: {key['KeyType']}")
        if table.get("AttributeDefinitions"):
            print()
            print("Attribute Definitions:")
            for attribute in table["AttributeDefinitions"]:
                print(f"  {attribute['AttributeName']}: {attribute['AttributeType']}")
        if table.get("GlobalSecondaryIndexes"):
            print()
            print("Global Secondary Indexes:")
            for index in table["GlobalSecondaryIndexes"]:
                print(f"  {index['IndexName']}: {index.get('IndexStatus')}")
        return table

    def _print_items(self, response):
        items = filter_sensitive_fields([deserialize_item(i) for i in response.get("Items", [])])
        if not items:
            print("No items found")
            return items

        print(f"✓ Found {len(items)} items (sensitive fields hidden):", file=sys.stderr)
        print(to_json(items))
        if response.get("LastEvaluatedKey"):
            print("⚠ More items available (pagination truncated)", file=sys.stderr)
        return items

    def scan_table(self, table_name, limit=DEFAULT_LIMIT):
        """Scan up to limit items. Reads the table sequentially."""
        print(f"🔍 Scanning table: {table_name} (limit: {limit})...", file=sys.stderr)
        kwargs = {"TableName": table_name}
        if limit:
            kwargs["Limit"] = limit
        return self._print_items(self._call("scan", **kwargs))

    def query_table(self, table_name, key_condition, limit=DEFAULT_LIMIT):
        """Query by partition key, e.g. ``customer_id = john_doe_123``."""
        name, value = parse_key_condition(key_condition)
        print(f"🔎 Querying table: {table_name}", file=sys.stderr)
        print(f"Key condition: {name} = {value} (limit: {limit})", file=sys.stderr)

        attribute_types = self._attribute_types(table_name)
        kwargs = {
            "TableName": table_name,
            "KeyConditionExpression": "#pk = :pk",
            "ExpressionAttributeNames": {"#pk": name},
            "ExpressionAttributeValues": {
                ":pk": to_attribute_value(value, attribute_types.get(name, "S"))
            },
        }
        if limit:
            kwargs["Limit"] = limit
        return self._print_items(self._call("query", **kwargs))

    def get_item(self, table_name, key):
        """Fetch one item; key is ``name:value`` or a JSON object."""
        key_values = parse_item_key(key)
        print(f"🎯 Getting item from table: {table_name}", file=sys.stderr)
        print(f"Key: {key}", file=sys.stderr)

        attribute_types = self._attribute_types(table_name)
        serialized = {
            name: to_attribute_value(value, attribute_types.get(name))
            for name, value in key_values.items()
        }
        response = self._call("get_item", TableName=table_name, Key=serialized)
        if not response.get("Item"):
            print("Item not found")
            return None

        [item] = filter_sensitive_fields([deserialize_item(response["Item"])])
        print("✓ Item found (sensitive fields hidden):", file=sys.stderr)
        print(to_json(item))
        return item
