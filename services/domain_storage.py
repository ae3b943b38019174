"""
Storage backends for facts extracted by domain plugins.

`DomainStorage` is the contract every backend implements. The only backend
shipped is `TimeSeriesStorage`, a SQLite table of timestamped records with
time-bucketed aggregation. `StorageFactory` maps a domain's storage
configuration to a backend and rejects types that are not implemented, so a
misconfigured domain fails at registration instead of on its first turn.

Record shape accepted by `store`:
    {
      "domain_id": str, "user_id": str | None, "conversation_id": str | None,
      "data": dict, "confidence": float, "extracted_at": datetime (optional)
    }

`query` returns each record's `data` merged with `id`, `conversation_id`,
`user_id`, `confidence` and `extracted_at` (ISO string).
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from services.database import connect, init_schema, storage_operation, transaction
from shared.errors import UnsupportedStorageError
from shared.models import StorageConfig
from shared.utils import generate_id, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_AGGREGATION_WINDOW_DAYS = 30

# strftime bucket formats per aggregation interval
INTERVAL_FORMATS = {
    'hour': '%Y-%m-%dT%H:00',
    'day': '%Y-%m-%d',
    'week': '%Y-W%W',
    'month': '%Y-%m',
}

FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
COLUMN_GROUPS = ('user_id', 'conversation_id', 'domain_id')
FIELD_METRICS = ('sum', 'avg', 'min', 'max')


@dataclass
class QueryFilters:
    """Filters shared by query, count and delete_many. `fields` matches JSON data keys exactly."""
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregationConfig:
    """
    What to aggregate.

    `metrics` entries are "count", "avg_confidence" or "<fn>:<field>" with fn
    one of sum/avg/min/max over a numeric JSON data field. `group_by` is a
    column (user_id, conversation_id, domain_id) or a JSON data field.
    """
    metrics: List[str] = field(default_factory=lambda: ['count'])
    group_by: Optional[str] = None
    interval: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def _json_path(field_name: str) -> str:
    if not FIELD_NAME.match(field_name):
        raise ValueError(f"Invalid field name: {field_name!r}")
    return f"$.{field_name}"


class DomainStorage(ABC):
    """Contract for domain fact storage backends."""

    @abstractmethod
    def store(self, record: Dict[str, Any]) -> str:
        """Store one record and return its id."""

    @abstractmethod
    def query(self, filters: Optional[QueryFilters] = None) -> List[Dict[str, Any]]:
        """Records matching the filters, newest first."""

    @abstractmethod
    def aggregate(self, config: AggregationConfig) -> Dict[str, Any]:
        """Aggregated metrics as {'periods': [...], 'total': {...}}."""

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete one record; True if it existed."""

    @abstractmethod
    def delete_many(self, filters: QueryFilters) -> int:
        """Delete all matching records; returns how many were deleted."""

    @abstractmethod
    def count(self, filters: Optional[QueryFilters] = None) -> int:
        """Number of matching records."""


class TimeSeriesStorage(DomainStorage):
    """
    SQLite time-series storage for one domain.

    All domains share the `domain_data` table by default; a domain may name
    its own table through `StorageConfig.table`.
    """

    def __init__(self, db_path: str, domain_id: str, table: Optional[str] = None,
                 retention_days: Optional[int] = None):
        table = table or 'domain_data'
        if not FIELD_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.db_path = db_path
        self.domain_id = domain_id
        self.table = table
        self.retention_days = retention_days
        init_schema(db_path, [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                domain_id TEXT NOT NULL,
                user_id TEXT,
                conversation_id TEXT,
                data TEXT NOT NULL,
                confidence REAL NOT NULL,
                extracted_at TEXT NOT NULL
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{table}_lookup ON {table} (domain_id, user_id, extracted_at)",
        ])

    def _where(self, filters: QueryFilters) -> tuple:
        clauses = ["domain_id = ?"]
        params: List[Any] = [self.domain_id]
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(filters.conversation_id)
        if filters.start_date is not None:
            clauses.append("extracted_at >= ?")
            params.append(to_iso(filters.start_date))
        if filters.end_date is not None:
            clauses.append("extracted_at <= ?")
            params.append(to_iso(filters.end_date))
        for key, value in filters.fields.items():
            clauses.append("json_extract(data, ?) = ?")
            params.extend([_json_path(key), value])
        return " AND ".join(clauses), params

    def store(self, record: Dict[str, Any]) -> str:
        record_id = record.get('id') or generate_id()
        extracted_at = record.get('extracted_at') or utc_now()
        with storage_operation(f"{self.domain_id}.store"), connect(self.db_path) as con:
            with transaction(con):
                con.execute(
                    f"""
                    INSERT INTO {self.table} (id, domain_id, user_id, conversation_id, data, confidence, extracted_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record_id, self.domain_id, record.get('user_id'), record.get('conversation_id'),
                        json.dumps(record.get('data', {}), ensure_ascii=False, default=str),
                        float(record.get('confidence', 1.0)), to_iso(extracted_at),
                    ),
                )
        logger.debug(f"[TimeSeriesStorage] Stored record {record_id}", extra={'domain_id': self.domain_id})
        return record_id

    def query(self, filters: Optional[QueryFilters] = None) -> List[Dict[str, Any]]:
        filters = filters or QueryFilters()
        where, params = self._where(filters)
        sql = f"SELECT * FROM {self.table} WHERE {where} ORDER BY extracted_at DESC, rowid DESC"
        if filters.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([filters.limit, filters.offset])
        elif filters.offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(filters.offset)

        with storage_operation(f"{self.domain_id}.query"), connect(self.db_path) as con:
            rows = con.execute(sql, params).fetchall()
        return [
            {
                **json.loads(row['data']),
                'id': row['id'],
                'user_id': row['user_id'],
                'conversation_id': row['conversation_id'],
                'confidence': row['confidence'],
                'extracted_at': row['extracted_at'],
            }
            for row in rows
        ]

    def _metric_expression(self, metric: str) -> str:
        if metric == 'count':
            return "COUNT(*)"
        if metric == 'avg_confidence':
            return "AVG(confidence)"
        fn, _, field_name = metric.partition(':')
        if fn not in FIELD_METRICS or not field_name:
            raise ValueError(f"Unsupported metric: {metric!r}")
        return f"{fn.upper()}(json_extract(data, '{_json_path(field_name)}'))"

    def aggregate(self, config: AggregationConfig) -> Dict[str, Any]:
        """
        Aggregate metrics over a time window, optionally bucketed and grouped.

        The window defaults to the last 30 days. Each period entry carries
        `period` (bucket label or None), `group` (group value or None) and one
        key per metric; `total` holds the metrics over the whole window.

        Raises:
            ValueError: On an unknown interval, metric or field name.
        """
        end = config.end_date or utc_now()
        start = config.start_date or end - timedelta(days=DEFAULT_AGGREGATION_WINDOW_DAYS)
        filters = QueryFilters(user_id=config.user_id, start_date=start, end_date=end)
        where, params = self._where(filters)

        metric_columns = [f"{self._metric_expression(m)} AS m{i}" for i, m in enumerate(config.metrics)]

        group_exprs = []
        if config.interval is not None:
            if config.interval not in INTERVAL_FORMATS:
                raise ValueError(f"Unsupported interval: {config.interval!r}")
            # ISO strings are parsed by strftime up to the seconds component
            group_exprs.append(f"strftime('{INTERVAL_FORMATS[config.interval]}', substr(extracted_at, 1, 19))")
        else:
            group_exprs.append("NULL")
        if config.group_by is None:
            group_exprs.append("NULL")
        elif config.group_by in COLUMN_GROUPS:
            group_exprs.append(config.group_by)
        else:
            group_exprs.append(f"json_extract(data, '{_json_path(config.group_by)}')")

        select = ", ".join([f"{group_exprs[0]} AS period", f"{group_exprs[1]} AS grp"] + metric_columns)
        periods_sql = (
            f"SELECT {select} FROM {self.table} WHERE {where} "
            f"GROUP BY period, grp ORDER BY period, grp"
        )
        total_sql = f"SELECT {', '.join(metric_columns)} FROM {self.table} WHERE {where}"

        with storage_operation(f"{self.domain_id}.aggregate"), connect(self.db_path) as con:
            period_rows = con.execute(periods_sql, params).fetchall()
            total_row = con.execute(total_sql, params).fetchone()

        def metrics_of(row) -> Dict[str, Any]:
            return {metric: row[f"m{i}"] for i, metric in enumerate(config.metrics)}

        periods = [
            {'period': row['period'], 'group': row['grp'], **metrics_of(row)}
            for row in period_rows
        ]
        return {
            'periods': periods,
            'total': metrics_of(total_row),
            'start_date': to_iso(start),
            'end_date': to_iso(end),
        }

    def delete(self, record_id: str) -> bool:
        with storage_operation(f"{self.domain_id}.delete"), connect(self.db_path) as con:
            with transaction(con):
                deleted = con.execute(
                    f"DELETE FROM {self.table} WHERE id = ? AND domain_id = ?", (record_id, self.domain_id)
                ).rowcount
        return deleted > 0

    def delete_many(self, filters: QueryFilters) -> int:
        where, params = self._where(filters)
        with storage_operation(f"{self.domain_id}.delete_many"), connect(self.db_path) as con:
            with transaction(con):
                deleted = con.execute(f"DELETE FROM {self.table} WHERE {where}", params).rowcount
        logger.info(f"[TimeSeriesStorage] Deleted {deleted} records", extra={'domain_id': self.domain_id})
        return deleted

    def count(self, filters: Optional[QueryFilters] = None) -> int:
        where, params = self._where(filters or QueryFilters())
        with storage_operation(f"{self.domain_id}.count"), connect(self.db_path) as con:
            row = con.execute(f"SELECT COUNT(*) AS n FROM {self.table} WHERE {where}", params).fetchone()
        return row['n']

    def purge_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Apply a retention policy by deleting records older than `days`."""
        cutoff = (now or utc_now()) - timedelta(days=days)
        with storage_operation(f"{self.domain_id}.purge"), connect(self.db_path) as con:
            with transaction(con):
                return con.execute(
                    f"DELETE FROM {self.table} WHERE domain_id = ? AND extracted_at < ?",
                    (self.domain_id, to_iso(cutoff)),
                ).rowcount

    def apply_retention(self, now: Optional[datetime] = None) -> int:
        """Purge records older than the configured retention; no-op without one."""
        if not self.retention_days:
            return 0
        deleted = self.purge_older_than(self.retention_days, now=now)
        if deleted:
            logger.info(f"[TimeSeriesStorage] Retention purged {deleted} records", extra={'domain_id': self.domain_id})
        return deleted


class StorageFactory:
    """
    Builds storage backends from domain storage configuration.

    Only the time-series backend is implemented; "document", "relational" and
    unknown types raise `UnsupportedStorageError`.
    """

    SUPPORTED_TYPES = ('timeseries',)

    def __init__(self, db_path: str):
        self.db_path = db_path

    def create(self, domain_id: str, config: StorageConfig) -> DomainStorage:
        if config.type == 'timeseries':
            return TimeSeriesStorage(
                self.db_path, domain_id, table=config.table, retention_days=config.retention_days
            )
        raise UnsupportedStorageError(config.type)
