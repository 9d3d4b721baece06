from __future__ import annotations

import copy
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure `backend/` is on sys.path so `import marketplace.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from marketplace.db.dynamodb.errors import DdbConflict, DdbValidation  # noqa: E402


@dataclass
class FakePage:
    items: list[dict[str, Any]]
    next_token: str | None


_NOT_EXISTS = re.compile(r"^attribute_not_exists\((\w+)\)$")
_EXISTS = re.compile(r"^attribute_exists\((\w+)\)$")
_EQUALS = re.compile(r"^(\w+)\s*=\s*(:\w+)$")


def _condition_holds(current: dict[str, Any] | None, expr: str | None, values: dict[str, Any] | None) -> bool:
    if not expr:
        return True
    vals = values or {}
    for clause in re.split(r"\s+AND\s+", expr.strip()):
        clause = clause.strip()
        m = _NOT_EXISTS.match(clause)
        if m:
            if current is not None and m.group(1) in current:
                return False
            continue
        m = _EXISTS.match(clause)
        if m:
            if current is None or m.group(1) not in current:
                return False
            continue
        m = _EQUALS.match(clause)
        if m:
            if current is None or current.get(m.group(1)) != vals.get(m.group(2)):
                return False
            continue
        raise AssertionError(f"FakeTable cannot evaluate condition: {clause}")
    return True


def _key_matches(cond: Any, item: dict[str, Any]) -> bool:
    expr = cond.get_expression()
    op = expr["operator"]
    vals = expr["values"]
    if op == "AND":
        return all(_key_matches(v, item) for v in vals)
    name = vals[0].name
    if name not in item:
        return False
    actual = item[name]
    if op == "=":
        return actual == vals[1]
    if op == "begins_with":
        return str(actual).startswith(str(vals[1]))
    if op == "<":
        return actual < vals[1]
    if op == "<=":
        return actual <= vals[1]
    if op == ">":
        return actual > vals[1]
    if op == ">=":
        return actual >= vals[1]
    if op == "BETWEEN":
        return vals[1] <= actual <= vals[2]
    raise AssertionError(f"FakeTable cannot evaluate key condition operator: {op}")


class FakeTable:
    """
    In-memory stand-in for `DynamoTable`.

    Conditional puts/deletes and all-or-nothing transactions behave like the
    real table; `before_transact` hooks let tests interleave a competing
    write right before a transaction is evaluated.
    """

    def __init__(self, *, max_transaction_items: int = 100):
        self.table_name = "fake"
        self.max_transaction_items = max_transaction_items
        self.items: dict[tuple[str, str], dict[str, Any]] = {}
        self.transactions: list[dict[str, Any]] = []
        self.before_transact: list[Callable[["FakeTable"], None]] = []
        self.reads: list[tuple[str, bool]] = []

    # --- basic operations ---

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = True) -> dict[str, Any] | None:
        self.reads.append((key["pk"], bool(consistent_read)))
        it = self.items.get((key["pk"], key["sk"]))
        return copy.deepcopy(it) if it is not None else None

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> None:
        k = (item["pk"], item["sk"])
        if not _condition_holds(self.items.get(k), condition_expression, expression_attribute_values):
            raise DdbConflict(message="Conditional check failed", operation="PutItem", table_name=self.table_name)
        self.items[k] = copy.deepcopy(item)

    # --- queries ---

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        next_token: str | None = None,
        consistent_read: bool = False,
    ) -> FakePage:
        sort_attr = "gsi1sk" if index_name else "sk"
        rows = [
            it
            for it in self.items.values()
            if (not index_name or "gsi1pk" in it) and _key_matches(key_condition_expression, it)
        ]
        rows.sort(key=lambda it: str(it.get(sort_attr) or ""), reverse=not scan_index_forward)
        start = int(next_token or 0)
        page = rows[start : start + int(limit)]
        nxt = str(start + int(limit)) if start + int(limit) < len(rows) else None
        return FakePage(items=copy.deepcopy(page), next_token=nxt)

    def query_all(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = True,
        consistent_read: bool = False,
        max_items: int = 5000,
    ) -> list[dict[str, Any]]:
        return self.query_page(
            key_condition_expression=key_condition_expression,
            index_name=index_name,
            limit=max_items,
            scan_index_forward=scan_index_forward,
        ).items

    # --- transactions ---

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "Item": copy.deepcopy(item),
            "ConditionExpression": condition_expression,
            "ExpressionAttributeValues": expression_attribute_values,
        }

    def tx_delete(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "Key": dict(key),
            "ConditionExpression": condition_expression,
            "ExpressionAttributeValues": expression_attribute_values,
        }

    def transact_write(self, *, puts=(), deletes=()) -> None:
        puts = list(puts)
        deletes = list(deletes)
        if not puts and not deletes:
            return
        if len(puts) + len(deletes) > self.max_transaction_items:
            raise DdbValidation(message="Transaction too large", operation="TransactWriteItems")

        hooks, self.before_transact = self.before_transact, []
        for hook in hooks:
            hook(self)

        for p in puts:
            k = (p["Item"]["pk"], p["Item"]["sk"])
            if not _condition_holds(self.items.get(k), p.get("ConditionExpression"), p.get("ExpressionAttributeValues")):
                raise DdbConflict(message="Transaction cancelled", operation="TransactWriteItems")
        for d in deletes:
            k = (d["Key"]["pk"], d["Key"]["sk"])
            if not _condition_holds(self.items.get(k), d.get("ConditionExpression"), d.get("ExpressionAttributeValues")):
                raise DdbConflict(message="Transaction cancelled", operation="TransactWriteItems")

        for p in puts:
            self.items[(p["Item"]["pk"], p["Item"]["sk"])] = copy.deepcopy(p["Item"])
        for d in deletes:
            self.items.pop((d["Key"]["pk"], d["Key"]["sk"]), None)
        self.transactions.append({"puts": len(puts), "deletes": len(deletes)})

    # --- test helpers ---

    def find(self, pk: str, sk: str) -> dict[str, Any] | None:
        return self.items.get((pk, sk))

    def snapshot(self) -> dict[tuple[str, str], dict[str, Any]]:
        return copy.deepcopy(self.items)


_TABLE_USERS = (
    "marketplace.repositories.projects_repo",
    "marketplace.repositories.bids_repo",
    "marketplace.repositories.verification_repo",
    "marketplace.repositories.attachments_repo",
    "marketplace.modules.verification.verification_workflow",
    "marketplace.modules.projects.project_lifecycle",
    "marketplace.modules.bidding.bid_lifecycle",
)


@pytest.fixture
def fake_table(monkeypatch) -> FakeTable:
    import importlib

    table = FakeTable()
    for name in _TABLE_USERS:
        mod = importlib.import_module(name)
        if hasattr(mod, "get_main_table"):
            monkeypatch.setattr(mod, "get_main_table", lambda: table)

    # No real sleeping between optimistic retries.
    import marketplace.db.dynamodb.optimistic as optimistic

    monkeypatch.setattr(optimistic, "sleep_backoff", lambda *_a, **_k: None)
    return table


@pytest.fixture
def actors():
    from marketplace.modules.identity.actor import Actor

    class _Actors:
        client = Actor.of("user-client", ["client"])
        other_client = Actor.of("user-client-2", ["client"])
        company_a = Actor.of("user-a", ["company"], company_id="co-a")
        company_b = Actor.of("user-b", ["company"], company_id="co-b")
        company_c = Actor.of("user-c", ["company"], company_id="co-c")
        admin = Actor.of("user-admin", ["admin"])

    return _Actors


@pytest.fixture
def approve_company(fake_table, actors):
    """Create a verification record and walk it to approved."""
    from marketplace.modules.verification import verification_workflow as vw
    from marketplace.repositories.attachments_repo import register_attachment
    from marketplace.settings import settings

    def _approve(company_id: str) -> None:
        from marketplace.modules.identity.actor import Actor

        vw.create_verification(company_id=company_id)
        member = Actor.of(f"member-{company_id}", ["company"], company_id=company_id)
        docs = {}
        for key in settings.required_doc_keys:
            att = register_attachment(
                owner_id=member.user_id, company_id=company_id, file_name=f"{key}.pdf", url=f"https://files/{key}"
            )
            docs[key] = att["ref"]
        vw.submit_documents(company_id=company_id, actor=member, documents=docs)
        vw.review(company_id=company_id, actor=actors.admin, decision="approve")

    return _approve


@pytest.fixture
def posted_project(fake_table, actors):
    from marketplace.modules.projects import project_lifecycle as pl

    def _create(**overrides: Any) -> dict[str, Any]:
        payload = {"title": "Office fit-out", "budget": {"min": 1000, "max": 5000}}
        payload.update(overrides)
        return pl.create_project(actor=actors.client, payload=payload)

    return _create
