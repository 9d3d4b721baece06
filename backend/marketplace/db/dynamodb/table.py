from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from boto3.dynamodb.types import TypeSerializer

from .client import dynamodb_client, table_resource
from .errors import DdbInternal, DdbValidation
from .pagination import decode_next_token, encode_next_token
from .retry import RetryPolicy, ddb_call


_serializer = TypeSerializer()

# Cascades carry many items; give contention more room than single-item calls.
TRANSACTION_RETRY = RetryPolicy(max_attempts=8, base_delay_s=0.08, max_delay_s=2.0)


def _to_attribute_values(values: dict[str, Any]) -> dict[str, Any]:
    # The low-level client wants {'S': ...}/{'N': ...} shapes, not Python values.
    return {k: _serializer.serialize(v) for k, v in values.items()}


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    next_token: str | None


class DynamoTable:
    """
    The single marketplace table.

    Reads and conditional puts go through the resource API; multi-item
    effects go through `transact_write`, whose entries are built with
    `tx_put` / `tx_delete` so every write carries its own condition.
    """

    def __init__(self, *, table_name: str, max_transaction_items: int = 100):
        self.table_name = str(table_name)
        self.max_transaction_items = int(max_transaction_items)
        self._table = table_resource(self.table_name)
        self._client = dynamodb_client()

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = True) -> dict[str, Any] | None:
        # Lifecycle decisions are made on strongly consistent reads only.
        resp = ddb_call(
            "GetItem",
            lambda: self._table.get_item(Key=key, ConsistentRead=bool(consistent_read)),
            table_name=self.table_name,
            key=key,
        )
        return resp.get("Item")

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"Item": item}
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression
        if expression_attribute_values:
            kwargs["ExpressionAttributeValues"] = expression_attribute_values
        ddb_call(
            "PutItem",
            lambda: self._table.put_item(**kwargs),
            table_name=self.table_name,
            key={"pk": item.get("pk"), "sk": item.get("sk")},
        )

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        next_token: str | None = None,
        consistent_read: bool = False,
    ) -> Page:
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": key_condition_expression,
            "ScanIndexForward": bool(scan_index_forward),
            "Limit": max(1, min(500, int(limit or 50))),
        }
        if index_name:
            kwargs["IndexName"] = index_name
        elif consistent_read:
            # GSIs do not support strongly consistent reads.
            kwargs["ConsistentRead"] = True
        lek = decode_next_token(next_token) if next_token else None
        if lek:
            kwargs["ExclusiveStartKey"] = lek

        resp = ddb_call("Query", lambda: self._table.query(**kwargs), table_name=self.table_name)
        return Page(items=resp.get("Items") or [], next_token=encode_next_token(resp.get("LastEvaluatedKey")))

    def query_all(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = True,
        consistent_read: bool = False,
        max_items: int = 5000,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        tok: str | None = None
        while len(items) < max_items:
            pg = self.query_page(
                key_condition_expression=key_condition_expression,
                index_name=index_name,
                limit=500,
                scan_index_forward=scan_index_forward,
                next_token=tok,
                consistent_read=consistent_read,
            )
            items.extend(pg.items)
            tok = pg.next_token
            if not tok:
                break
        return items[:max_items]

    # --- transactions ---

    def _tx_entry(
        self,
        body: dict[str, Any],
        condition_expression: str | None,
        expression_attribute_values: dict[str, Any] | None,
    ) -> dict[str, Any]:
        out = {"TableName": self.table_name, **body}
        if condition_expression:
            out["ConditionExpression"] = condition_expression
        if expression_attribute_values:
            out["ExpressionAttributeValues"] = _to_attribute_values(expression_attribute_values)
        return out

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._tx_entry(
            {"Item": _to_attribute_values(item)}, condition_expression, expression_attribute_values
        )

    def tx_delete(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._tx_entry({"Key": _to_attribute_values(key)}, condition_expression, expression_attribute_values)

    def transact_write(
        self,
        *,
        puts: Iterable[dict[str, Any]] = (),
        deletes: Iterable[dict[str, Any]] = (),
    ) -> None:
        """Commit every entry or none; a failed condition raises `DdbConflict`."""
        items = [{"Put": p} for p in puts] + [{"Delete": d} for d in deletes]
        if not items:
            return
        if len(items) > self.max_transaction_items:
            raise DdbValidation(
                message=f"Transaction has {len(items)} items (limit {self.max_transaction_items})",
                operation="TransactWriteItems",
                table_name=self.table_name,
            )
        ddb_call(
            "TransactWriteItems",
            lambda: self._client.transact_write_items(TransactItems=items),
            table_name=self.table_name,
            retry_policy=TRANSACTION_RETRY,
        )


def get_main_table() -> DynamoTable:
    from ...settings import settings

    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return DynamoTable(
        table_name=settings.ddb_table_name,
        max_transaction_items=settings.ddb_max_transaction_items,
    )
