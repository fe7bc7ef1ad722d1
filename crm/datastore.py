"""
Table store behind every CRM component.

Rows look like Airtable records (``{"id": ..., "fields": {...}}``). Queries are
built from small predicate objects so the same call runs against a live base
(compiled to Airtable formulas) or against the in-memory tables used in tests.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests
from pyairtable import Api

from crm.config import Settings, settings as load_settings
from crm.errors import DependencyError
from crm.runtime import get_logger, iso, only_digits, parse_dt, retry, utc_now

logger = get_logger("datastore")

Record = Dict[str, Any]

# Pseudo-field for the store-assigned record id (Airtable `RECORD_ID()`).
RECORD_ID = "RECORD_ID()"


# ============================================================
# PREDICATES
# ============================================================


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple


def eq(field: str, value: Any) -> Condition:
    return Condition(field, "eq", value)


def in_(field: str, values: Iterable[Any]) -> Condition:
    return Condition(field, "in", tuple(values))


def lte(field: str, value: Any) -> Condition:
    return Condition(field, "lte", value)


def digits_contain(field: str, digits: str) -> Condition:
    """Match when the field, stripped to its digits, contains ``digits``."""
    return Condition(field, "digits_contain", only_digits(digits))


def any_of(*conditions: Condition) -> AnyOf:
    return AnyOf(tuple(conditions))


# ---------------- formula compilation (Airtable) ----------------
def _quote(value: Any) -> str:
    if isinstance(value, datetime):
        value = iso(value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def _literal(value: Any) -> str:
    if value is None:
        return "BLANK()"
    if isinstance(value, bool):
        return "TRUE()" if value else "FALSE()"
    if isinstance(value, (int, float)):
        return str(value)
    return _quote(value)


def _compile_condition(cond: Condition) -> str:
    ref = cond.field if cond.field == RECORD_ID else "{" + cond.field + "}"
    if cond.op == "eq":
        return f"{ref}={_literal(cond.value)}"
    if cond.op == "in":
        if not cond.value:
            return "FALSE()"
        parts = [f"{ref}={_literal(v)}" for v in cond.value]
        return parts[0] if len(parts) == 1 else "OR(" + ",".join(parts) + ")"
    if cond.op == "lte":
        if isinstance(cond.value, (int, float)) and not isinstance(cond.value, bool):
            return f"{ref}<={cond.value}"
        return f"NOT(IS_AFTER({ref},DATETIME_PARSE({_quote(cond.value)})))"
    if cond.op == "digits_contain":
        return f"FIND({_quote(cond.value)},REGEX_REPLACE({ref}&'','[^0-9]',''))>0"
    raise ValueError(f"Unsupported operator {cond.op!r}")


def to_formula(where: Sequence[Any]) -> Optional[str]:
    parts: List[str] = []
    for item in where or ():
        if isinstance(item, AnyOf):
            inner = [_compile_condition(c) for c in item.conditions]
            parts.append("OR(" + ",".join(inner) + ")" if len(inner) > 1 else inner[0])
        else:
            parts.append(_compile_condition(item))
    if not parts:
        return None
    return parts[0] if len(parts) == 1 else "AND(" + ",".join(parts) + ")"


# ---------------- in-memory evaluation ----------------
def _blank(value: Any) -> bool:
    return value in (None, "", [], ())


def _values_equal(actual: Any, expected: Any) -> bool:
    if expected is None:
        return _blank(actual)
    if isinstance(expected, datetime) or isinstance(actual, datetime):
        return parse_dt(actual) == parse_dt(expected)
    return actual == expected or str(actual) == str(expected)


def _match_condition(record: Record, cond: Condition) -> bool:
    actual = record.get("id") if cond.field == RECORD_ID else (record.get("fields") or {}).get(cond.field)
    if cond.op == "eq":
        return _values_equal(actual, cond.value)
    if cond.op == "in":
        return any(_values_equal(actual, v) for v in cond.value)
    if cond.op == "lte":
        if _blank(actual):
            return False
        if isinstance(cond.value, (int, float)) and not isinstance(cond.value, bool):
            return float(actual) <= cond.value
        left, right = parse_dt(actual), parse_dt(cond.value)
        return bool(left and right and left <= right)
    if cond.op == "digits_contain":
        return bool(cond.value) and cond.value in only_digits(str(actual or ""))
    raise ValueError(f"Unsupported operator {cond.op!r}")


def matches(record: Record, where: Sequence[Any]) -> bool:
    for item in where or ():
        if isinstance(item, AnyOf):
            if not any(_match_condition(record, c) for c in item.conditions):
                return False
        elif not _match_condition(record, item):
            return False
    return True


def _sort_key(value: Any):
    if _blank(value):
        return (1, "")
    dt = parse_dt(value) if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-" else None
    if dt is not None:
        return (0, dt.timestamp())
    if isinstance(value, (int, float)):
        return (0, value)
    return (0, str(value))


def _apply_sort(records: List[Record], sort: Sequence[str]) -> List[Record]:
    out = list(records)
    for key in reversed(list(sort or ())):
        desc = key.startswith("-")
        name = key[1:] if desc else key
        out.sort(key=lambda r: _sort_key((r.get("fields") or {}).get(name)), reverse=desc)
    return out


def _compact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (iso(v) if isinstance(v, datetime) else v) for k, v in (fields or {}).items()}


# ============================================================
# TABLES
# ============================================================


class BaseTable:
    """Operations every backend supports. ``select`` returns records in ``sort`` order."""

    name: str = ""
    in_memory: bool = False

    def select(self, where: Sequence[Any] = (), *, sort: Sequence[str] = (), limit: Optional[int] = None) -> List[Record]:
        raise NotImplementedError

    def get(self, record_id: str) -> Optional[Record]:
        raise NotImplementedError

    def insert(self, fields: Dict[str, Any]) -> Record:
        raise NotImplementedError

    def update(self, record_id: str, fields: Dict[str, Any]) -> Record:
        raise NotImplementedError

    def upsert(self, rows: Sequence[Dict[str, Any]], key_fields: Sequence[str]) -> List[Record]:
        raise NotImplementedError

    def delete(self, record_ids: Sequence[str]) -> int:
        raise NotImplementedError

    # --- derived helpers ---
    def first(self, where: Sequence[Any] = (), *, sort: Sequence[str] = ()) -> Optional[Record]:
        rows = self.select(where, sort=sort, limit=1)
        return rows[0] if rows else None

    def update_where(self, where: Sequence[Any], fields: Dict[str, Any]) -> int:
        rows = self.select(where)
        for row in rows:
            self.update(row["id"], fields)
        return len(rows)

    def delete_where(self, where: Sequence[Any]) -> int:
        ids = [row["id"] for row in self.select(where)]
        return self.delete(ids) if ids else 0

    @staticmethod
    def _stamp(fields: Dict[str, Any]) -> Dict[str, Any]:
        body = _compact(fields)
        body.setdefault("created_at", utc_now().isoformat())
        return body


class InMemoryTable(BaseTable):
    """Airtable drop-in replacement used for local runs and tests."""

    in_memory = True

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Record] = {}
        self._sequence = itertools.count(1)

    def _new_id(self) -> str:
        return f"rec_{self.name.lower().replace(' ', '_')}_{next(self._sequence)}"

    def select(self, where=(), *, sort=(), limit=None):
        records = [r for r in self._records.values() if matches(r, where)]
        records = _apply_sort(records, sort)
        if limit is not None:
            records = records[: int(limit)]
        return [{"id": r["id"], "fields": dict(r["fields"])} for r in records]

    def get(self, record_id):
        record = self._records.get(record_id)
        return {"id": record["id"], "fields": dict(record["fields"])} if record else None

    def insert(self, fields):
        record_id = self._new_id()
        record = {"id": record_id, "fields": self._stamp(fields)}
        self._records[record_id] = record
        return {"id": record_id, "fields": dict(record["fields"])}

    def update(self, record_id, fields):
        if record_id not in self._records:
            raise DependencyError(f"Unknown record id {record_id} in {self.name}")
        self._records[record_id]["fields"].update(_compact(fields))
        return self.get(record_id)

    def upsert(self, rows, key_fields):
        out: List[Record] = []
        for row in rows:
            body = _compact(row)
            where = [eq(k, body.get(k)) for k in key_fields]
            existing = next((r for r in self._records.values() if matches(r, where)), None)
            if existing:
                existing["fields"].update(body)
                out.append(self.get(existing["id"]))
            else:
                out.append(self.insert(body))
        return out

    def delete(self, record_ids):
        removed = 0
        for record_id in record_ids:
            if self._records.pop(record_id, None) is not None:
                removed += 1
        return removed


class AirtableTable(BaseTable):
    """pyairtable-backed table; transport failures surface as ``DependencyError``."""

    def __init__(self, api: Api, base_id: str, name: str):
        self.name = name
        self.table = api.table(base_id, name)

    def _call(self, action: str, func):
        try:
            return retry(
                func,
                retries=2,
                base_delay=0.5,
                exceptions=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
                logger=logger,
            )
        except requests.exceptions.RequestException as exc:
            response = getattr(exc, "response", None)
            status = getattr(response, "status_code", None)
            body = getattr(response, "text", None)
            logger.error("Airtable %s failed [%s] status=%s: %s", action, self.name, status, exc)
            raise DependencyError(
                f"Airtable {action} failed on {self.name}: {exc}",
                provider_status=status,
                body=body,
            ) from exc

    def select(self, where=(), *, sort=(), limit=None):
        kwargs: Dict[str, Any] = {}
        formula = to_formula(where)
        if formula:
            kwargs["formula"] = formula
        if sort:
            kwargs["sort"] = list(sort)
        if limit is not None:
            kwargs["max_records"] = int(limit)
        return list(self._call("all", lambda: self.table.all(**kwargs)))

    def get(self, record_id):
        if not record_id:
            return None
        try:
            return self._call("get", lambda: self.table.get(record_id))
        except DependencyError as exc:
            if exc.provider_status == 404:
                return None
            raise

    def insert(self, fields):
        body = self._stamp(fields)
        return self._call("create", lambda: self.table.create(body))

    def update(self, record_id, fields):
        body = _compact(fields)
        return self._call("update", lambda: self.table.update(record_id, body))

    def update_where(self, where, fields):
        rows = self.select(where)
        if not rows:
            return 0
        body = _compact(fields)
        self._call("batch_update", lambda: self.table.batch_update([{"id": r["id"], "fields": body} for r in rows]))
        return len(rows)

    def upsert(self, rows, key_fields):
        records = [{"fields": self._stamp(row)} for row in rows]
        result = self._call("batch_upsert", lambda: self.table.batch_upsert(records, key_fields=list(key_fields)))
        return list((result or {}).get("records", []))

    def delete(self, record_ids):
        ids = list(record_ids)
        if not ids:
            return 0
        self._call("batch_delete", lambda: self.table.batch_delete(ids))
        return len(ids)


# ============================================================
# DATASTORE
# ============================================================


class Datastore:
    """One handle per CRM entity. Built explicitly and passed to every component."""

    def __init__(
        self,
        *,
        recruits: BaseTable,
        stages: BaseTable,
        templates: BaseTable,
        sequences: BaseTable,
        follow_ups: BaseTable,
        messages: BaseTable,
        inbox_reads: BaseTable,
        profiles: BaseTable,
    ) -> None:
        self.recruits = recruits
        self.stages = stages
        self.templates = templates
        self.sequences = sequences
        self.follow_ups = follow_ups
        self.messages = messages
        self.inbox_reads = inbox_reads
        self.profiles = profiles

    @property
    def backend(self) -> str:
        return "memory" if self.recruits.in_memory else "airtable"

    @classmethod
    def _build(cls, s: Settings, factory) -> "Datastore":
        return cls(
            recruits=factory(s.RECRUITS_TABLE),
            stages=factory(s.STAGES_TABLE),
            templates=factory(s.TEMPLATES_TABLE),
            sequences=factory(s.SEQUENCES_TABLE),
            follow_ups=factory(s.FOLLOW_UPS_TABLE),
            messages=factory(s.MESSAGES_TABLE),
            inbox_reads=factory(s.INBOX_READS_TABLE),
            profiles=factory(s.PROFILES_TABLE),
        )

    @classmethod
    def in_memory(cls, s: Optional[Settings] = None) -> "Datastore":
        return cls._build(s or load_settings(), InMemoryTable)

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "Datastore":
        s = s or load_settings()
        if s.FORCE_IN_MEMORY or not (s.AIRTABLE_API_KEY and s.AIRTABLE_BASE_ID):
            logger.warning("Airtable not configured (or CRM_FORCE_IN_MEMORY set); using in-memory tables.")
            return cls.in_memory(s)
        api = Api(s.AIRTABLE_API_KEY)
        return cls._build(s, lambda name: AirtableTable(api, s.AIRTABLE_BASE_ID, name))
