#!/usr/bin/env python3
"""
Unit tests for the CSP XSS Auditor command-line tool.
"""
import unittest
import sys
import os
import asyncio
import io
import logging
import tempfile
import shutil

# Add parent directory to path to allow importing the tool
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from csp_xss_auditor import CSPXSSAuditor, audit_snapshot, build_snapshot, configure_logging, read_urls
from utils.audit import audit
from utils.models import Header, MetaElement, PageSnapshot


class TestBuildSnapshot(unittest.TestCase):
    """Test cases for turning captured responses into snapshots."""

    def test_from_mapping(self):
        snapshot = build_snapshot(
            "https://example.com/",
            {"Content-Type": "text/html", "Content-Security-Policy": "default-src 'none'"},
        )

        self.assertEqual(snapshot.headers, (
            Header("Content-Type", "text/html"),
            Header("Content-Security-Policy", "default-src 'none'"),
        ))
        self.assertEqual(snapshot.meta_elements, ())

    def test_repeated_headers_are_kept(self):
        snapshot = build_snapshot("https://example.com/", [
            ("Content-Security-Policy", "script-src 'none'"),
            ("Content-Security-Policy", "object-src 'none'"),
        ])
        self.assertEqual(len(snapshot.headers), 2)

    def test_meta_elements_from_html(self):
        html = '<html><head><meta http-equiv="Content-Security-Policy" content="base-uri \'none\'"></head></html>'

        snapshot = build_snapshot("https://example.com/", [], html)

        self.assertEqual(snapshot.meta_elements, (
            MetaElement("Content-Security-Policy", "base-uri 'none'"),
        ))


class TestAuditSnapshot(unittest.TestCase):
    """Test cases for the stored fields of an audit record."""

    def test_counts_and_report_only(self):
        snapshot = build_snapshot(
            "https://example.com/",
            [
                ("Content-Security-Policy", "script-src 'none', object-src 'none'"),
                ("Content-Security-Policy-Report-Only", "default-src 'none'"),
            ],
            '<meta http-equiv="content-security-policy" content="base-uri \'none\'">',
        )

        record = audit_snapshot(snapshot)

        self.assertEqual(record["csp_header_count"], 2)
        self.assertEqual(record["csp_meta_tag_count"], 1)
        self.assertTrue(record["has_report_only"])
        self.assertEqual(record["outcome"]["score"], 1)
        self.assertEqual(
            record["outcome"]["details"]["items"][-1]["description"],
            "The page contains a CSP defined in a <meta> tag. "
            "Consider defining the CSP in an HTTP header if you can.",
        )

    def test_report_only_alone_is_no_csp(self):
        snapshot = build_snapshot("https://example.com/", [
            ("Content-Security-Policy-Report-Only", "default-src 'none'"),
        ])

        record = audit_snapshot(snapshot)

        self.assertEqual(record["csp_header_count"], 0)
        self.assertEqual(record["outcome"]["score"], 0)
        self.assertEqual(
            record["outcome"]["details"]["items"][0]["description"],
            "No CSP found in enforcement mode",
        )


class TestReadUrls(unittest.TestCase):
    """Test cases for reading URL lists."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def write(self, content):
        path = os.path.join(self.temp_dir, "urls.txt")
        with open(path, "w") as f:
            f.write(content)
        return path

    def test_csv_ranking(self):
        path = self.write("1,google.com\n2,youtube.com\n")
        self.assertEqual(read_urls(path), ["google.com", "youtube.com"])

    def test_plain_list_with_comments(self):
        path = self.write("# pages to audit\nhttps://example.com/\n\n  example.org  \n")
        self.assertEqual(read_urls(path), ["https://example.com/", "example.org"])


class TestCSPXSSAuditor(unittest.TestCase):
    """Test cases for the auditor without network access."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.auditor = CSPXSSAuditor(db_path=os.path.join(self.temp_dir, "audit.db"))

    def tearDown(self):
        self.auditor.close()
        shutil.rmtree(self.temp_dir)

    def test_initial_metadata(self):
        self.assertEqual(self.auditor.metadata["total_sites_attempted"], 0)
        self.assertEqual(self.auditor.metadata["total_sites_succeeded"], 0)

    def test_process_url_records_audit_errors(self):
        async def fetch_snapshot(session, url):
            return 200, build_snapshot(url, [("Content-Security-Policy", "default-src 'none'")])

        def broken_audit(snapshot):
            raise RuntimeError("evaluator unavailable")

        self.auditor.fetch_snapshot = fetch_snapshot

        import csp_xss_auditor
        original = csp_xss_auditor.audit_snapshot
        csp_xss_auditor.audit_snapshot = broken_audit
        try:
            with self.assertLogs("csp_xss_auditor", level="ERROR"):
                result = asyncio.run(self.auditor.process_url(None, "example.com"))
        finally:
            csp_xss_auditor.audit_snapshot = original

        self.assertEqual(result["url"], "https://example.com")
        self.assertIsNone(result["outcome"])
        self.assertEqual(result["error"], "Audit error: evaluator unavailable")

    def test_process_url(self):
        async def fetch_snapshot(session, url):
            return 200, build_snapshot(url, [("Content-Security-Policy", "script-src *")])

        self.auditor.fetch_snapshot = fetch_snapshot

        result = asyncio.run(self.auditor.process_url(None, "https://example.com/"))

        self.assertIsNone(result["error"])
        self.assertEqual(result["status_code"], 200)
        self.assertEqual(result["csp_header_count"], 1)
        self.assertEqual(result["outcome"]["score"], 0)

    def test_process_url_records_unexpected_fetch_errors(self):
        async def fetch_snapshot(session, url):
            raise ValueError("malformed response")

        self.auditor.fetch_snapshot = fetch_snapshot

        with self.assertLogs("csp_xss_auditor", level="ERROR"):
            result = asyncio.run(self.auditor.process_url(None, "https://example.com/"))

        self.assertIsNone(result["outcome"])
        self.assertEqual(result["error"], "Unexpected error: malformed response")

    def test_batch_is_stored_when_one_fetch_fails(self):
        async def fetch_snapshot(session, url):
            if "broken" in url:
                raise ValueError("malformed response")
            return 200, build_snapshot(url, [("Content-Security-Policy", "default-src 'none'")])

        self.auditor.fetch_snapshot = fetch_snapshot

        with self.assertLogs("csp_xss_auditor", level="ERROR"):
            results = asyncio.run(self.auditor.process_batch(
                ["https://ok.example.com/", "https://broken.example.com/"], 1
            ))

        self.assertEqual(len(results), 2)
        self.assertEqual(self.auditor.db.get_audit_count(), 2)
        errors = {r["url"]: r["error"] for r in self.auditor.db.get_audits()}
        self.assertIsNone(errors["https://ok.example.com/"])
        self.assertEqual(errors["https://broken.example.com/"], "Unexpected error: malformed response")


class TestConfigureLogging(unittest.TestCase):
    """Test cases for the CLI's logging setup."""

    def setUp(self):
        self.stream = io.StringIO()

    def tearDown(self):
        configure_logging(logging.INFO)
        self.redirect(sys.stdout)

    def redirect(self, stream):
        for name in ("csp_xss_auditor", "utils"):
            for handler in logging.getLogger(name).handlers:
                if type(handler) is logging.StreamHandler:
                    handler.setStream(stream)

    def run_audit(self):
        audit(PageSnapshot(
            url="https://example.com/",
            headers=(Header("Content-Security-Policy", "default-src 'none'"),),
        ))

    def test_verbose_shows_engine_debug(self):
        configure_logging(logging.DEBUG)
        self.redirect(self.stream)

        self.run_audit()

        self.assertIn(
            "https://example.com/: 1 CSP header(s), 0 CSP meta tag(s)",
            self.stream.getvalue(),
        )

    def test_default_level_hides_engine_debug(self):
        configure_logging(logging.INFO)
        self.redirect(self.stream)

        self.run_audit()

        self.assertEqual(self.stream.getvalue(), "")


if __name__ == "__main__":
    unittest.main()
