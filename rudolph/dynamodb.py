"""A thin DynamoDB table client and attribute-value marshalling.

The client talks to an ``api`` object that performs the low-level calls.
Each of its methods (``delete_item``, ``get_item``, ``put_item``,
``update_item``, ``query``, ``scan``) takes the request parameters as a
dict, in DynamoDB's wire naming, and a keyword ``timeout`` in seconds, and
returns the response dict or raises.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from rudolph.clock import rfc3339

DEFAULT_TIMEOUT = 5.0


@dataclass(frozen=True)
class PrimaryKey:
    """The partition and sort key of a table row."""

    partition_key: str
    sort_key: str

    def to_item(self) -> dict[str, str]:
        return {"PK": self.partition_key, "SK": self.sort_key}


def _plain_map(obj: Any) -> dict[str, Any]:
    """Flatten a record into attribute names and plain Python values."""
    to_item = getattr(obj, "to_item", None)
    if callable(to_item):
        result = dict(to_item())
    elif is_dataclass(obj) and not isinstance(obj, type):
        result = {}
        for field in fields(obj):
            name = field.metadata.get("dynamodbav", field.name)
            if name == "-":
                continue
            value = getattr(obj, field.name)
            if field.metadata.get("inline"):
                result.update(_plain_map(value))
                continue
            if field.metadata.get("omitempty") and not value:
                continue
            result[name] = value
    elif isinstance(obj, Mapping):
        result = dict(obj)
    else:
        raise TypeError(f"cannot marshal {type(obj).__name__} as a map")
    for key in result:
        if not isinstance(key, str):
            raise TypeError(f"attribute names must be strings, not {type(key).__name__}")
    return result


def _number(value: int | float | Decimal) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"cannot marshal non-finite number {value!r}")
    if isinstance(value, Decimal) and not value.is_finite():
        raise ValueError(f"cannot marshal non-finite number {value!r}")
    return str(value)


def marshal_value(value: Any) -> dict[str, Any]:
    """Convert a Python value into a DynamoDB attribute value."""
    if value is None:
        return {"NULL": True}
    if isinstance(value, Enum):
        return marshal_value(value.value)
    if isinstance(value, bool):
        return {"BOOL": value}
    if isinstance(value, str):
        return {"S": value}
    if isinstance(value, (int, float, Decimal)):
        return {"N": _number(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"B": bytes(value)}
    if isinstance(value, datetime):
        return {"S": rfc3339(value)}
    if isinstance(value, (set, frozenset)):
        if not value:
            return {"NULL": True}
        if all(isinstance(v, str) for v in value):
            return {"SS": sorted(value)}
        if all(isinstance(v, (bytes, bytearray)) for v in value):
            return {"BS": sorted(bytes(v) for v in value)}
        if all(isinstance(v, (int, float, Decimal)) and not isinstance(v, bool) for v in value):
            return {"NS": sorted(_number(v) for v in value)}
        raise TypeError("set members must all be strings, numbers or bytes")
    if isinstance(value, (list, tuple)):
        return {"L": [marshal_value(v) for v in value]}
    if isinstance(value, Mapping) or callable(getattr(value, "to_item", None)) or (
        is_dataclass(value) and not isinstance(value, type)
    ):
        return {"M": marshal_map(value)}
    raise TypeError(f"cannot marshal value of type {type(value).__name__}")


def marshal_map(obj: Any) -> dict[str, dict[str, Any]]:
    """Convert a mapping, dataclass or keyed record into a DynamoDB item."""
    return {name: marshal_value(value) for name, value in _plain_map(obj).items()}


def _parse_number(text: str) -> int | float:
    try:
        return int(text)
    except ValueError:
        return float(text)


def unmarshal_value(attribute: Mapping[str, Any]) -> Any:
    """Convert a DynamoDB attribute value into a Python value."""
    if len(attribute) != 1:
        raise ValueError(f"attribute value must have exactly one type, got {sorted(attribute)}")
    ((kind, payload),) = attribute.items()
    if kind == "S":
        return payload
    if kind == "N":
        return _parse_number(payload)
    if kind == "BOOL":
        return bool(payload)
    if kind == "NULL":
        return None
    if kind == "B":
        return bytes(payload)
    if kind == "SS":
        return set(payload)
    if kind == "NS":
        return {_parse_number(v) for v in payload}
    if kind == "BS":
        return {bytes(v) for v in payload}
    if kind == "L":
        return [unmarshal_value(v) for v in payload]
    if kind == "M":
        return unmarshal_map(payload)
    raise ValueError(f"unknown attribute value type {kind!r}")


def unmarshal_map(item: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    """Convert a DynamoDB item into a dict of Python values."""
    return {name: unmarshal_value(value) for name, value in item.items()}


def delete_item(table_name: str, api: Any, key: PrimaryKey, timeout: float) -> Any:
    """Delete the row with the given key."""
    params = {"Key": marshal_map(key), "TableName": table_name}
    return api.delete_item(params, timeout=timeout)


def get_item(
    table_name: str, api: Any, key: PrimaryKey, consistent_read: bool, timeout: float
) -> Any:
    """Fetch the row with the given key."""
    params = {
        "Key": marshal_map(key),
        "TableName": table_name,
        "ConsistentRead": consistent_read,
    }
    return api.get_item(params, timeout=timeout)


def put_item(table_name: str, api: Any, item: Any, timeout: float) -> Any:
    """Write a whole row, replacing any row with the same key."""
    params = {"TableName": table_name, "Item": marshal_map(item)}
    return api.put_item(params, timeout=timeout)


def update_item(table_name: str, api: Any, key: PrimaryKey, fields: Any, timeout: float) -> Any:
    """Set the given fields on an existing row whose partition key matches.

    Raises ValueError when there are no fields to set.
    """
    key_item = marshal_map(key)
    to_set = marshal_map(fields)
    if not to_set:
        raise ValueError("an update needs at least one field to set")

    names: dict[str, str] = {}
    name_aliases: dict[str, str] = {}
    values: dict[str, dict[str, Any]] = {}

    def name_alias(name: str) -> str:
        if name not in name_aliases:
            alias = f"#{len(names)}"
            names[alias] = name
            name_aliases[name] = alias
        return name_aliases[name]

    def value_alias(value: dict[str, Any]) -> str:
        alias = f":{len(values)}"
        values[alias] = value
        return alias

    condition = f"{name_alias('PK')} = {value_alias(marshal_value(key.partition_key))}"
    assignments = [
        f"{name_alias(name)} = {value_alias(value)}" for name, value in sorted(to_set.items())
    ]

    params = {
        "Key": key_item,
        "TableName": table_name,
        "UpdateExpression": "SET " + ", ".join(assignments),
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
        "ConditionExpression": condition,
        "ReturnValues": "ALL_NEW",
    }
    return api.update_item(params, timeout=timeout)


def query(table_name: str, api: Any, params: Mapping[str, Any]) -> Any:
    """Run a query against the table, always with the default timeout."""
    request = {**params, "TableName": table_name}
    return api.query(request, timeout=DEFAULT_TIMEOUT)


def scan(table_name: str, api: Any, params: Mapping[str, Any], timeout: float) -> Any:
    """Scan the table."""
    request = {**params, "TableName": table_name}
    return api.scan(request, timeout=timeout)


class DynamoDBClient:
    """Operations on a single DynamoDB table."""

    def __init__(self, api: Any, table_name: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.api = api
        self.table_name = table_name
        self.timeout = timeout

    def delete_item(self, key: PrimaryKey) -> Any:
        return delete_item(self.table_name, self.api, key, self.timeout)

    def get_item(self, key: PrimaryKey, consistent_read: bool) -> Any:
        return get_item(self.table_name, self.api, key, consistent_read, self.timeout)

    def put_item(self, item: Any) -> Any:
        return put_item(self.table_name, self.api, item, self.timeout)

    def update_item(self, key: PrimaryKey, item: Any) -> Any:
        return update_item(self.table_name, self.api, key, item, self.timeout)

    def query(self, params: Mapping[str, Any]) -> Any:
        return query(self.table_name, self.api, params)

    def scan(self, params: Mapping[str, Any]) -> Any:
        return scan(self.table_name, self.api, params, self.timeout)