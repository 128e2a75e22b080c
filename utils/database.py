"""
Database utilities for the CSP XSS audit tools.

This module handles SQLite storage of audit outcomes and their findings rows.
"""
import json
import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from utils.audit import TABLE_HEADINGS


TOOL_VERSION = "1.0.0"


class AuditDatabase:
    """
    SQLite database handler for audit outcomes.
    """

    def __init__(self, db_path: str):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self.conn = None
        self.cursor = None

        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

        self._initialize_db()

    def _initialize_db(self):
        """Initialize the database schema if it doesn't exist."""
        self.conn = sqlite3.connect(self.db_path)
        self.cursor = self.conn.cursor()

        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                id INTEGER PRIMARY KEY,
                date_collected TEXT,
                total_sites_attempted INTEGER,
                total_sites_succeeded INTEGER,
                tool_version TEXT
            )
        """)

        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS audits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                status_code INTEGER,
                score INTEGER,
                not_applicable INTEGER,
                csp_header_count INTEGER,
                csp_meta_tag_count INTEGER,
                has_report_only INTEGER,
                error TEXT,
                batch_id INTEGER
            )
        """)

        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audits_url ON audits(url)
        """)

        # Sub-items point at their parent row through parent_position.
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_rows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_id INTEGER,
                position INTEGER NOT NULL,
                parent_position INTEGER,
                description TEXT,
                description_is_code INTEGER,
                directive TEXT,
                severity TEXT,
                FOREIGN KEY (audit_id) REFERENCES audits(id)
            )
        """)

        self.cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_rows_audit ON audit_rows(audit_id)
        """)

        self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            self.cursor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def insert_metadata(self, metadata: Dict[str, Any]):
        """
        Insert or update the single metadata row.

        Args:
            metadata: Metadata dictionary
        """
        values = (
            metadata.get("date_collected", datetime.now().isoformat()),
            metadata.get("total_sites_attempted", 0),
            metadata.get("total_sites_succeeded", 0),
            metadata.get("tool_version", TOOL_VERSION),
        )

        self.cursor.execute("SELECT COUNT(*) FROM metadata")
        if self.cursor.fetchone()[0] > 0:
            self.cursor.execute("""
                UPDATE metadata SET
                date_collected = ?,
                total_sites_attempted = ?,
                total_sites_succeeded = ?,
                tool_version = ?
                WHERE id = 1
            """, values)
        else:
            self.cursor.execute("""
                INSERT INTO metadata (
                    id,
                    date_collected,
                    total_sites_attempted,
                    total_sites_succeeded,
                    tool_version
                ) VALUES (1, ?, ?, ?, ?)
            """, values)

        self.conn.commit()

    def get_metadata(self) -> Dict[str, Any]:
        self.cursor.execute("""
            SELECT date_collected, total_sites_attempted, total_sites_succeeded, tool_version
            FROM metadata
            WHERE id = 1
        """)

        row = self.cursor.fetchone()
        if not row:
            return {
                "date_collected": datetime.now().isoformat(),
                "total_sites_attempted": 0,
                "total_sites_succeeded": 0,
                "tool_version": TOOL_VERSION
            }

        return {
            "date_collected": row[0],
            "total_sites_attempted": row[1],
            "total_sites_succeeded": row[2],
            "tool_version": row[3]
        }

    def sanitize_string(self, value: Any) -> Optional[str]:
        """Sanitize a string value for database insertion.

        Args:
            value: The value to sanitize

        Returns:
            Sanitized string or None if value is None
        """
        if value is None:
            return None

        if not isinstance(value, str):
            value = str(value)

        try:
            # Fails on lone surrogates
            return value.encode('utf-8').decode('utf-8')
        except UnicodeEncodeError:
            return value.encode('utf-8', 'replace').decode('utf-8')

    def _insert_row(self, audit_id: int, position: int, item: Dict[str, Any],
                    parent_position: Optional[int] = None) -> None:
        description = item.get("description")
        is_code = isinstance(description, dict)
        if is_code:
            description = description.get("value")

        self.cursor.execute("""
            INSERT INTO audit_rows (
                audit_id,
                position,
                parent_position,
                description,
                description_is_code,
                directive,
                severity
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            audit_id,
            position,
            parent_position,
            self.sanitize_string(description),
            int(is_code),
            self.sanitize_string(item.get("directive")),
            self.sanitize_string(item.get("severity")),
        ))

    def insert_audit(self, audit_data: Dict[str, Any], batch_id: Optional[int] = None) -> int:
        """
        Insert one audit record and its findings rows.

        Args:
            audit_data: Record produced by the auditor
            batch_id: Optional batch identifier for grouping audits

        Returns:
            ID of the inserted audit
        """
        outcome = audit_data.get("outcome") or {}
        not_applicable = outcome.get("notApplicable")

        self.cursor.execute("""
            INSERT INTO audits (
                url,
                timestamp,
                status_code,
                score,
                not_applicable,
                csp_header_count,
                csp_meta_tag_count,
                has_report_only,
                error,
                batch_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            self.sanitize_string(audit_data.get("url", "")),
            self.sanitize_string(audit_data.get("timestamp", datetime.now().isoformat())),
            audit_data.get("status_code"),
            outcome.get("score"),
            None if not_applicable is None else int(not_applicable),
            audit_data.get("csp_header_count", 0),
            audit_data.get("csp_meta_tag_count", 0),
            int(bool(audit_data.get("has_report_only"))),
            self.sanitize_string(audit_data.get("error")),
            batch_id
        ))

        audit_id = self.cursor.lastrowid

        items = outcome.get("details", {}).get("items", [])
        for position, item in enumerate(items):
            self._insert_row(audit_id, position, item)
            sub_items = item.get("subItems", {}).get("items", [])
            for sub_position, sub_item in enumerate(sub_items):
                self._insert_row(audit_id, sub_position, sub_item, parent_position=position)

        self.conn.commit()
        return audit_id

    def batch_insert_audits(self, audits: List[Dict[str, Any]],
                            batch_id: Optional[int] = None) -> List[int]:
        return [self.insert_audit(audit_data, batch_id) for audit_data in audits]

    def get_audit_count(self) -> int:
        self.cursor.execute("SELECT COUNT(*) FROM audits")
        return self.cursor.fetchone()[0]

    def _get_items(self, audit_id: int) -> List[Dict[str, Any]]:
        self.cursor.execute("""
            SELECT position, parent_position, description, description_is_code, directive, severity
            FROM audit_rows
            WHERE audit_id = ?
            ORDER BY parent_position IS NOT NULL, parent_position, position
        """, (audit_id,))

        items = []
        for position, parent_position, description, is_code, directive, severity in self.cursor.fetchall():
            item = {
                "description": {"type": "code", "value": description} if is_code else description,
                "directive": directive,
                "severity": severity,
            }
            if parent_position is None:
                items.append(item)
            else:
                parent = items[parent_position]
                parent.setdefault("subItems", {"type": "subitems", "items": []})
                parent["subItems"]["items"].append(item)
        return items

    def get_audits(self, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Get audit records from the database.

        Args:
            limit: Maximum number of audits to retrieve (None for all)
            offset: Starting offset

        Returns:
            List of audit records in the auditor's format
        """
        self.cursor.execute("""
            SELECT * FROM audits
            ORDER BY id
            LIMIT ? OFFSET ?
        """, (limit if limit else -1, offset))

        columns = [col[0] for col in self.cursor.description]
        rows = [dict(zip(columns, row)) for row in self.cursor.fetchall()]

        audits = []
        for audit_row in rows:
            outcome = None
            if audit_row["score"] is not None:
                outcome = {
                    "score": audit_row["score"],
                    "notApplicable": bool(audit_row["not_applicable"]),
                    "details": {
                        "type": "table",
                        "headings": [heading.to_dict() for heading in TABLE_HEADINGS],
                        "items": self._get_items(audit_row["id"]),
                    },
                }
            audits.append({
                "url": audit_row["url"],
                "timestamp": audit_row["timestamp"],
                "status_code": audit_row["status_code"],
                "csp_header_count": audit_row["csp_header_count"],
                "csp_meta_tag_count": audit_row["csp_meta_tag_count"],
                "has_report_only": bool(audit_row["has_report_only"]),
                "outcome": outcome,
                "error": audit_row["error"],
            })

        return audits

    def export_to_json(self, output_file: str) -> None:
        """
        Export database contents to JSON format.

        Args:
            output_file: Path to the output JSON file
        """
        data = {
            "metadata": self.get_metadata(),
            "audits": self.get_audits()
        }

        with open(output_file, 'w') as f:
            json.dump(data, f, indent=2)

    def import_from_json(self, input_file: str) -> None:
        with open(input_file, 'r') as f:
            data = json.load(f)

        if "metadata" in data:
            self.insert_metadata(data["metadata"])

        if "audits" in data:
            self.batch_insert_audits(data["audits"])

    def get_audits_dataframe(self) -> pd.DataFrame:
        """
        Get audits as a pandas DataFrame.

        Returns:
            DataFrame with one row per audit and its top-level row count
        """
        query = """
            SELECT a.*,
                   (SELECT COUNT(*) FROM audit_rows r
                    WHERE r.audit_id = a.id AND r.parent_position IS NULL) as row_count
            FROM audits a
        """

        return pd.read_sql_query(query, self.conn)

    def get_rows_dataframe(self) -> pd.DataFrame:
        """
        Get findings rows as a pandas DataFrame.

        Returns:
            DataFrame with one row per table row or sub-item, joined with its audit
        """
        query = """
            SELECT r.*, a.url, a.score, a.error
            FROM audit_rows r
            JOIN audits a ON r.audit_id = a.id
        """

        return pd.read_sql_query(query, self.conn)

    def get_analysis_stats(self) -> Dict[str, Any]:
        """
        Calculate headline statistics over the stored audits.

        Returns:
            Dictionary with analysis statistics
        """
        self.cursor.execute("SELECT COUNT(*) FROM audits")
        total_audits = self.cursor.fetchone()[0]

        self.cursor.execute("SELECT COUNT(*) FROM audits WHERE score = 1")
        passed = self.cursor.fetchone()[0]

        self.cursor.execute("SELECT COUNT(*) FROM audits WHERE score = 0")
        failed = self.cursor.fetchone()[0]

        self.cursor.execute("""
            SELECT COUNT(*) FROM audits
            WHERE csp_header_count = 0 AND csp_meta_tag_count = 0 AND error IS NULL
        """)
        no_csp = self.cursor.fetchone()[0]

        self.cursor.execute("SELECT COUNT(*) FROM audits WHERE csp_meta_tag_count > 0")
        meta_tag = self.cursor.fetchone()[0]

        self.cursor.execute("SELECT COUNT(*) FROM audits WHERE error IS NOT NULL")
        errors = self.cursor.fetchone()[0]

        def percent(count):
            return round(count / total_audits * 100, 2) if total_audits > 0 else 0

        return {
            "total_audits": total_audits,
            "audits_passed": passed,
            "audits_passed_percent": percent(passed),
            "audits_failed": failed,
            "audits_failed_percent": percent(failed),
            "audits_without_csp": no_csp,
            "audits_without_csp_percent": percent(no_csp),
            "audits_with_meta_tag_csp": meta_tag,
            "audits_with_meta_tag_csp_percent": percent(meta_tag),
            "audits_with_errors": errors,
            "audits_with_errors_percent": percent(errors),
        }
