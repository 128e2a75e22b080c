#!/usr/bin/env python3
"""
Unit tests for CSP extraction and parsing.
"""
import unittest
import sys
import os

# Add parent directory to path to allow importing utils
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.models import Header, MetaElement, PolicySource, RawPolicy
from utils.parser import (
    get_raw_csps,
    get_raw_policies,
    parse_csp_header,
    parse_meta_elements,
    split_policies,
)


class TestCSPParser(unittest.TestCase):
    """Test cases for the single-policy parser."""

    def test_empty_header(self):
        """Test parsing an empty header."""
        self.assertEqual(parse_csp_header(""), {})
        self.assertEqual(parse_csp_header(None), {})

    def test_basic_parsing(self):
        """Test parsing a simple CSP header."""
        result = parse_csp_header("default-src 'self'; script-src 'self' https://example.com")

        self.assertEqual(list(result), ["default-src", "script-src"])
        self.assertEqual(result["default-src"], ["'self'"])
        self.assertEqual(result["script-src"], ["'self'", "https://example.com"])

    def test_malformed_headers(self):
        """Test parsing malformed CSP headers."""
        # Extra semicolons
        result = parse_csp_header("default-src 'self';;; script-src 'self';")
        self.assertEqual(len(result), 2)

        # Missing values
        result = parse_csp_header("default-src; script-src 'self'")
        self.assertEqual(result["default-src"], [])

    def test_first_directive_wins(self):
        """Browsers ignore a repeated directive."""
        result = parse_csp_header("script-src 'none'; script-src *")
        self.assertEqual(result, {"script-src": ["'none'"]})

    def test_normalization(self):
        """Directive names, keywords and schemes are lower-cased; hosts are kept."""
        result = parse_csp_header("Script-Src 'SELF' HTTPS: 'Nonce-AbC123xyz' https://CDN.example.com 'self'")
        self.assertEqual(
            result["script-src"],
            ["'self'", "https:", "'Nonce-AbC123xyz'", "https://CDN.example.com"],
        )


class TestPolicyExtraction(unittest.TestCase):
    """Test cases for collecting raw policies from headers and meta tags."""

    def test_split_policies(self):
        self.assertEqual(split_policies("a, b"), ["a", " b"])
        self.assertEqual(split_policies(" , \t,"), [])
        self.assertEqual(split_policies(None), [])

    def test_no_policies(self):
        headers = [Header("Content-Type", "text/html")]
        meta = [MetaElement(http_equiv="refresh", content="5"), MetaElement()]
        self.assertEqual(get_raw_csps(headers, meta), ([], []))

    def test_case_insensitive_names(self):
        headers = [Header("CONTENT-SECURITY-POLICY", "default-src 'none'")]
        meta = [MetaElement(http_equiv="Content-Security-Policy", content="script-src 'self'")]

        csp_headers, csp_meta_tags = get_raw_csps(headers, meta)

        self.assertEqual(csp_headers, ["default-src 'none'"])
        self.assertEqual(csp_meta_tags, ["script-src 'self'"])

    def test_report_only_is_ignored(self):
        headers = [Header("Content-Security-Policy-Report-Only", "script-src 'none'")]
        self.assertEqual(get_raw_csps(headers, []), ([], []))

    def test_comma_separated_policies_stay_separate(self):
        headers = [
            Header("content-security-policy", "script-src 'self', object-src 'none',  "),
            Header("content-security-policy", "base-uri 'none'"),
        ]

        csp_headers, _ = get_raw_csps(headers, [])

        self.assertEqual(csp_headers, ["script-src 'self'", " object-src 'none'", "base-uri 'none'"])

    def test_meta_without_content(self):
        meta = [MetaElement(http_equiv="content-security-policy")]
        self.assertEqual(get_raw_csps([], meta), ([], []))

    def test_identical_policies_are_not_deduplicated(self):
        headers = [Header("content-security-policy", "default-src 'none'")]
        meta = [MetaElement(http_equiv="content-security-policy", content="default-src 'none'")]

        policies = get_raw_policies(headers, meta)

        self.assertEqual(policies, [
            RawPolicy("default-src 'none'", PolicySource.HEADER),
            RawPolicy("default-src 'none'", PolicySource.META_TAG),
        ])


class TestMetaElements(unittest.TestCase):
    """Test cases for parsing <meta> elements out of HTML."""

    def test_parse_meta_elements(self):
        html = """
        <html><head>
          <meta charset="utf-8">
          <META HTTP-EQUIV="Content-Security-Policy" CONTENT="script-src 'self'">
          <meta name="viewport" content="width=device-width">
        </head><body></body></html>
        """

        elements = parse_meta_elements(html)

        self.assertEqual(len(elements), 3)
        self.assertEqual(elements[0], MetaElement())
        self.assertEqual(elements[1], MetaElement("Content-Security-Policy", "script-src 'self'"))
        self.assertEqual(elements[2], MetaElement(None, "width=device-width"))

    def test_meta_elements_feed_extraction(self):
        html = '<meta http-equiv="content-security-policy" content="object-src \'none\', base-uri \'self\'">'

        _, csp_meta_tags = get_raw_csps([], parse_meta_elements(html))

        self.assertEqual(csp_meta_tags, ["object-src 'none'", " base-uri 'self'"])


if __name__ == "__main__":
    unittest.main()
