#!/usr/bin/env python3
"""
Unit tests for the CSP audit summary.
"""
import unittest
import sys
import os
import json
import tempfile
import shutil

import pandas as pd

# Add parent directory to path to allow importing the tool
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from csp_audit_summary import CSPAuditSummary
from csp_xss_auditor import audit_snapshot, build_snapshot
from utils.database import AuditDatabase


def make_record(url, headers=(), html="", error=None):
    record = {
        "url": url,
        "timestamp": "2024-01-01T00:00:00",
        "status_code": None if error else 200,
        "csp_header_count": 0,
        "csp_meta_tag_count": 0,
        "has_report_only": False,
        "outcome": None,
        "error": error,
    }
    if error is None:
        record.update(audit_snapshot(build_snapshot(url, list(headers), html)))
    return record


class TestCSPAuditSummary(unittest.TestCase):
    """Test cases for summarizing a seeded database."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "audit.db")

        with AuditDatabase(self.db_path) as db:
            db.batch_insert_audits([
                make_record("https://strict.example.com/", [
                    ("Content-Security-Policy",
                     "script-src 'nonce-r4nd0mN0nc3' 'strict-dynamic'; object-src 'none'; base-uri 'none'; "
                     "require-trusted-types-for 'script'; report-uri /csp"),
                ]),
                make_record("https://wildcard.example.com/", [
                    ("Content-Security-Policy", "script-src *; object-src 'none'"),
                    ("Content-Security-Policy-Report-Only", "default-src 'none'"),
                ]),
                make_record("https://nocsp.example.com/"),
                make_record(
                    "https://meta.example.com/",
                    html='<meta http-equiv="Content-Security-Policy" content="foo-src x; script-src *">',
                ),
                make_record("https://down.example.com/", error="Connection error"),
            ])

        self.output_file = os.path.join(self.temp_dir, "out", "summary.json")
        self.csv_file = os.path.join(self.temp_dir, "out", "pages.csv")
        self.summary = CSPAuditSummary(self.db_path, self.output_file, csv_output=self.csv_file)

    def tearDown(self):
        self.summary.close_db()
        shutil.rmtree(self.temp_dir)

    def test_analyze_scores(self):
        self.summary.connect_db()
        self.summary.analyze_scores()
        scores = self.summary.results["scores"]

        self.assertEqual(scores["total_pages"], 4)
        self.assertEqual(scores["passed"], 1)
        self.assertEqual(scores["failed"], 3)
        self.assertEqual(scores["passed_percent"], 25.0)
        self.assertEqual(scores["without_csp"], 1)
        self.assertEqual(scores["with_meta_tag_csp"], 1)
        self.assertEqual(scores["with_report_only_header"], 1)

    def test_include_errors(self):
        summary = CSPAuditSummary(self.db_path, self.output_file, skip_errors=False)
        summary.connect_db()
        try:
            summary.analyze_scores()
        finally:
            summary.close_db()

        scores = summary.results["scores"]
        self.assertEqual(scores["total_pages"], 5)
        # The failed fetch has no policy counts but is not a page without CSP
        self.assertEqual(scores["without_csp"], 1)
        self.assertEqual(scores["without_csp_percent"], 20.0)

    def test_failed_fetches_only(self):
        db_path = os.path.join(self.temp_dir, "errors.db")
        with AuditDatabase(db_path) as db:
            db.insert_audit(make_record("https://down.example.com/", error="Connection error"))

        summary = CSPAuditSummary(db_path, self.output_file, skip_errors=False)
        results = summary.run_all_analysis()

        self.assertEqual(results["scores"]["total_pages"], 1)
        self.assertEqual(results["scores"]["without_csp"], 0)
        self.assertEqual(results["scores"]["without_csp_percent"], 0)

    def test_analyze_findings(self):
        self.summary.connect_db()
        self.summary.analyze_findings()
        findings = self.summary.results["findings"]

        self.assertEqual(findings["rows_by_severity"]["Syntax"], 1)
        self.assertEqual(findings["syntax_issues"], 1)
        self.assertEqual(findings["most_common_bypass_directives"]["script-src"], 4)
        self.assertNotIn(
            "No CSP found in enforcement mode",
            [entry["description"] for entry in findings["most_common_findings"]],
        )

    def test_run_all_analysis(self):
        results = self.summary.run_all_analysis()

        with open(self.output_file) as f:
            saved = json.load(f)
        self.assertEqual(saved, results)
        self.assertEqual(saved["metadata"]["pages_analyzed"], 4)

        df = pd.read_csv(self.csv_file)
        self.assertEqual(len(df), 4)
        self.assertIn("high_rows", df.columns)
        self.assertIn("syntax_rows", df.columns)
        wildcard = df[df.url == "https://wildcard.example.com/"].iloc[0]
        self.assertEqual(wildcard.passed, "No")
        self.assertEqual(int(wildcard.high_rows), 2)


if __name__ == "__main__":
    unittest.main()
