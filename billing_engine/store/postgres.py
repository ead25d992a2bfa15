"""
PostgreSQL record store.

Provides connection management and the read queries behind ``RecordStore``.
Child rows are assembled in SQL with ``json_agg`` / ``row_to_json`` so each
record comes back as one nested dict.
"""
from __future__ import annotations
from typing import Any, Optional
import psycopg
from psycopg.rows import dict_row
from loguru import logger
from ..config import EngineConfig
from .base import RawRecord, StoreError


def get_connection(config: Optional[EngineConfig] = None):
    """
    Create a database connection.

    Returns a read-only autocommit psycopg connection with ``dict_row``
    results, the configured schema on the search path and the configured
    connect/statement timeouts applied.
    """
    config = config or EngineConfig.from_env()
    options = (
        f"-c search_path={config.db_schema} "
        f"-c statement_timeout={config.statement_timeout_ms} "
        "-c default_transaction_read_only=on"
    )
    return psycopg.connect(
        config.db_url,
        autocommit=True,
        row_factory=dict_row,
        connect_timeout=config.connect_timeout,
        options=options,
    )


ORDER_SELECT = """
    SELECT
        o.*,
        row_to_json(p) AS prescriptions,
        COALESCE(
            (SELECT json_agg(oi ORDER BY oi.si) FROM order_items oi WHERE oi.order_id = o.id),
            '[]'::json
        ) AS order_items,
        (SELECT row_to_json(op) FROM order_payments op WHERE op.order_id = o.id) AS order_payments
    FROM orders o
    LEFT JOIN prescriptions p ON p.id = o.prescription_id
"""

CONTACT_LENS_SELECT = """
    SELECT
        clp.*,
        row_to_json(p) AS prescriptions,
        COALESCE(
            (SELECT json_agg(cli ORDER BY cli.item_index NULLS LAST, cli.created_at)
             FROM contact_lens_items cli
             WHERE cli.contact_lens_prescription_id = clp.id),
            '[]'::json
        ) AS contact_lens_items,
        (SELECT row_to_json(cp) FROM contact_lens_payments cp
         WHERE cp.contact_lens_prescription_id = clp.id) AS payment
    FROM contact_lens_prescriptions clp
    LEFT JOIN prescriptions p ON p.id = clp.prescription_id
"""

PRESCRIPTION_SELECT = """
    SELECT p.*
    FROM prescriptions p
"""

# Matches the customer's name, phone numbers or any reference number
TEXT_FILTER = {
    "orders": """
        WHERE o.order_no ILIKE %(pattern)s
           OR o.bill_no ILIKE %(pattern)s
           OR p.name ILIKE %(pattern)s
           OR p.mobile_no ILIKE %(pattern)s
           OR p.phone_landline ILIKE %(pattern)s
           OR p.prescription_no ILIKE %(pattern)s
        ORDER BY o.order_date DESC, o.created_at DESC
        LIMIT %(limit)s
    """,
    "contact_lens": """
        WHERE clp.reference_no ILIKE %(pattern)s
           OR p.name ILIKE %(pattern)s
           OR p.mobile_no ILIKE %(pattern)s
           OR p.phone_landline ILIKE %(pattern)s
           OR p.prescription_no ILIKE %(pattern)s
        ORDER BY clp.created_at DESC
        LIMIT %(limit)s
    """,
    "prescriptions": """
        WHERE p.name ILIKE %(pattern)s
           OR p.mobile_no ILIKE %(pattern)s
           OR p.phone_landline ILIKE %(pattern)s
           OR p.prescription_no ILIKE %(pattern)s
           OR p.reference_no ILIKE %(pattern)s
        ORDER BY p.date DESC, p.created_at DESC
        LIMIT %(limit)s
    """,
}

MOBILE_FILTER = {
    "orders": """
        WHERE regexp_replace(COALESCE(p.mobile_no, ''), '\\D', '', 'g') = %(mobile)s
           OR regexp_replace(COALESCE(p.phone_landline, ''), '\\D', '', 'g') = %(mobile)s
        ORDER BY o.order_date DESC, o.created_at DESC
    """,
    "contact_lens": """
        WHERE regexp_replace(COALESCE(p.mobile_no, ''), '\\D', '', 'g') = %(mobile)s
           OR regexp_replace(COALESCE(p.phone_landline, ''), '\\D', '', 'g') = %(mobile)s
        ORDER BY clp.created_at DESC
    """,
    "prescriptions": """
        WHERE regexp_replace(COALESCE(p.mobile_no, ''), '\\D', '', 'g') = %(mobile)s
           OR regexp_replace(COALESCE(p.phone_landline, ''), '\\D', '', 'g') = %(mobile)s
        ORDER BY p.date DESC, p.created_at DESC
    """,
}

ID_FILTER = {
    "orders": "WHERE o.id::text = %(id)s",
    "contact_lens": "WHERE clp.id::text = %(id)s",
    "prescriptions": "WHERE p.id::text = %(id)s",
}

SELECTS = {
    "orders": ORDER_SELECT,
    "contact_lens": CONTACT_LENS_SELECT,
    "prescriptions": PRESCRIPTION_SELECT,
}


class PostgresRecordStore:
    """
    Record store backed by the optical store's PostgreSQL database.

    Each query opens its own short-lived connection so the three fetchers
    can run on separate threads without sharing a connection.

    Usage:
        store = PostgresRecordStore(EngineConfig.from_env())
        rows = store.find_orders_by_text("sharma")
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()

    def _query(self, entity: str, sql: str, params: dict[str, Any]) -> list[RawRecord]:
        try:
            with get_connection(self.config) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
        except psycopg.Error as e:
            logger.error(f"Query on {entity} failed: {e}")
            raise StoreError(f"Query on {entity} failed: {e}") from e
        logger.debug(f"Query on {entity} returned {len(rows)} rows")
        return [dict(row) for row in rows]

    def _find_by_text(self, entity: str, term: str, limit: int) -> list[RawRecord]:
        sql = SELECTS[entity] + TEXT_FILTER[entity]
        return self._query(entity, sql, {"pattern": f"%{term}%", "limit": limit})

    def _find_by_mobile(self, entity: str, mobile: str) -> list[RawRecord]:
        sql = SELECTS[entity] + MOBILE_FILTER[entity]
        return self._query(entity, sql, {"mobile": mobile})

    def _get(self, entity: str, record_id: str) -> Optional[RawRecord]:
        sql = SELECTS[entity] + ID_FILTER[entity]
        rows = self._query(entity, sql, {"id": str(record_id)})
        return rows[0] if rows else None

    def find_orders_by_text(self, term: str) -> list[RawRecord]:
        return self._find_by_text("orders", term, self.config.search_limit)

    def find_contact_lens_by_text(self, term: str) -> list[RawRecord]:
        return self._find_by_text("contact_lens", term, self.config.cl_search_limit)

    def find_prescriptions_by_text(self, term: str) -> list[RawRecord]:
        return self._find_by_text("prescriptions", term, self.config.search_limit)

    def find_orders_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._find_by_mobile("orders", mobile)

    def find_contact_lens_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._find_by_mobile("contact_lens", mobile)

    def find_prescriptions_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._find_by_mobile("prescriptions", mobile)

    def get_order(self, record_id: str) -> Optional[RawRecord]:
        return self._get("orders", record_id)

    def get_contact_lens(self, record_id: str) -> Optional[RawRecord]:
        return self._get("contact_lens", record_id)

    def get_prescription(self, record_id: str) -> Optional[RawRecord]:
        return self._get("prescriptions", record_id)

    def get_row_count(self, table_name: str) -> int:
        """Get row count for one of the source tables."""
        if table_name not in ("orders", "contact_lens_prescriptions", "prescriptions"):
            raise ValueError(f"Unknown table: {table_name}")
        rows = self._query(table_name, f"SELECT COUNT(*) AS cnt FROM {table_name}", {})
        return rows[0]["cnt"] if rows else 0

    def ping(self) -> dict[str, Any]:
        """Check connectivity and report row counts."""
        return {
            "connected": True,
            "schema": self.config.db_schema,
            "orders": self.get_row_count("orders"),
            "contact_lens_prescriptions": self.get_row_count("contact_lens_prescriptions"),
            "prescriptions": self.get_row_count("prescriptions"),
        }
