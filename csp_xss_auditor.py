#!/usr/bin/env python3
"""
CSP XSS Auditor - Tool for auditing how well a page's Content Security Policy
protects against cross-site scripting.

This script fetches pages, captures their response headers and <meta>
elements, scores their CSP with the CSP XSS audit and stores every outcome in
a SQLite database.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

import aiohttp
from aiohttp.client_exceptions import (
    ClientConnectorError,
    ClientError,
    ClientResponseError,
    TooManyRedirects,
    ServerTimeoutError
)
import tqdm

from utils.audit import audit
from utils.database import AuditDatabase, TOOL_VERSION
from utils.logger import setup_logger
from utils.models import Header, PageSnapshot, PolicySource
from utils.parser import get_raw_policies, parse_meta_elements


logger = setup_logger("csp_xss_auditor")

HeaderSource = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def build_snapshot(url: str, headers: HeaderSource, html_content: str = "") -> PageSnapshot:
    """
    Build a page snapshot from captured response data.

    Args:
        url: Final URL of the page
        headers: Response headers, as a mapping or as (name, value) pairs.
            Multi-valued mappings such as aiohttp's CIMultiDictProxy keep
            every value.
        html_content: Document body

    Returns:
        PageSnapshot ready to audit
    """
    pairs = headers.items() if hasattr(headers, "items") else headers
    return PageSnapshot(
        url=url,
        headers=tuple(Header(name, value) for name, value in pairs),
        meta_elements=tuple(parse_meta_elements(html_content)) if html_content else (),
    )


def audit_snapshot(snapshot: PageSnapshot) -> Dict[str, Any]:
    """Audit a snapshot and return the stored fields of the record."""
    policies = get_raw_policies(snapshot.headers, snapshot.meta_elements)
    outcome = audit(snapshot)
    return {
        "csp_header_count": sum(p.source == PolicySource.HEADER for p in policies),
        "csp_meta_tag_count": sum(p.source == PolicySource.META_TAG for p in policies),
        "has_report_only": any(
            header.name.lower() == "content-security-policy-report-only"
            for header in snapshot.headers
        ),
        "outcome": outcome.to_dict(),
    }


def configure_logging(level: int = logging.INFO, log_file: str = None) -> None:
    """
    Configure the tool's logger and the parent logger of the utils modules.

    Args:
        level: Logging level for both loggers
        log_file: Optional file to write logs to
    """
    setup_logger("csp_xss_auditor", level=level, log_file=log_file)
    # utils.audit and friends log through getLogger(__name__)
    setup_logger("utils", level=level, log_file=log_file)


def read_urls(input_file: str) -> List[str]:
    """Read URLs from a CSV (rank,domain) file or a plain one-URL-per-line file."""
    urls = []
    with open(input_file, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            urls.append(line.split(',')[1] if ',' in line else line)
    return urls


class CSPXSSAuditor:
    """
    Main class for auditing the CSP of many pages with database storage.
    """

    def __init__(
        self,
        concurrency: int = 10,
        timeout: int = 20,
        user_agent: str = "CSP-XSS-Audit/" + TOOL_VERSION,
        db_path: str = "data/results/csp_xss_audit.db",
        batch_size: int = 100,
    ):
        """
        Initialize the auditor.

        Args:
            concurrency: Number of concurrent requests
            timeout: Request timeout in seconds
            user_agent: User-Agent header to use for requests
            db_path: Path to the SQLite database file
            batch_size: Number of pages to audit in each batch
        """
        self.concurrency = concurrency
        self.timeout = timeout
        self.user_agent = user_agent
        self.db_path = db_path
        self.batch_size = batch_size

        self.db = AuditDatabase(db_path)

        metadata = self.db.get_metadata()
        self.metadata = {
            "date_collected": datetime.now().isoformat(),
            "total_sites_attempted": metadata.get("total_sites_attempted", 0),
            "total_sites_succeeded": metadata.get("total_sites_succeeded", 0),
            "tool_version": TOOL_VERSION
        }

    def create_session(self) -> aiohttp.ClientSession:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout, connect=5)
        connector = aiohttp.TCPConnector(limit=self.concurrency, enable_cleanup_closed=True)
        return aiohttp.ClientSession(headers=headers, timeout=timeout, connector=connector)

    async def fetch_snapshot(self, session: aiohttp.ClientSession, url: str) -> Tuple[int, PageSnapshot]:
        """
        Load a page and capture the artifacts the audit needs.

        Args:
            session: Open aiohttp session
            url: URL to load

        Returns:
            Tuple of (status code, snapshot of the final response)
        """
        async with session.get(url, allow_redirects=True) as response:
            html_content = ""
            if "html" in response.headers.get("Content-Type", "").lower():
                html_content = await response.text()
            return response.status, build_snapshot(str(response.url), response.headers, html_content)

    async def process_url(self, session: aiohttp.ClientSession, url: str) -> Dict[str, Any]:
        """
        Audit a single URL.

        Args:
            session: Open aiohttp session
            url: URL to audit

        Returns:
            Audit record; network and audit failures are stored in "error"
        """
        result = {
            "url": url,
            "timestamp": datetime.now().isoformat(),
            "status_code": None,
            "csp_header_count": 0,
            "csp_meta_tag_count": 0,
            "has_report_only": False,
            "outcome": None,
            "error": None
        }

        if not url.startswith(('http://', 'https://')):
            url = 'https://' + url
            result["url"] = url

        try:
            result["status_code"], snapshot = await self.fetch_snapshot(session, url)
        except ClientConnectorError:
            result["error"] = "Connection error"
            return result
        except TooManyRedirects:
            result["error"] = "Too many redirects"
            return result
        except (ServerTimeoutError, asyncio.TimeoutError):
            result["error"] = f"Timeout after {self.timeout}s"
            return result
        except ClientResponseError as e:
            result["error"] = f"HTTP error: {e.status}"
            return result
        except ClientError as e:
            result["error"] = f"Client error: {str(e)}"
            return result
        except UnicodeDecodeError:
            result["error"] = "Failed to decode HTML content"
            return result
        except Exception as e:
            logger.exception(f"Unexpected error fetching {url}")
            result["error"] = f"Unexpected error: {str(e)}"
            return result

        try:
            result.update(audit_snapshot(snapshot))
        except Exception as e:
            logger.exception(f"Audit failed for {url}")
            result["error"] = f"Audit error: {str(e)}"

        return result

    async def process_batch(self, urls: List[str], batch_id: int) -> List[Dict[str, Any]]:
        """
        Audit a batch of URLs concurrently and store the records.

        Args:
            urls: List of URLs to audit
            batch_id: Batch identifier

        Returns:
            Records of the batch, in completion order
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async with self.create_session() as session:
            async def limited_process(url):
                async with semaphore:
                    return await self.process_url(session, url)

            tasks = [limited_process(url) for url in urls]

            batch_results = []
            for future in tqdm.tqdm(asyncio.as_completed(tasks), total=len(tasks), desc=f"Batch {batch_id}"):
                result = await future
                batch_results.append(result)

                if result["outcome"] is not None and not result["error"]:
                    self.metadata["total_sites_succeeded"] += 1
                    logger.debug(f"{result['url']}: score {result['outcome']['score']}")

        self.db.batch_insert_audits(batch_results, batch_id)
        return batch_results

    async def process_urls(self, urls: List[str]) -> List[Dict[str, Any]]:
        total_urls = len(urls)
        self.metadata["total_sites_attempted"] += total_urls
        logger.info(f"Auditing {total_urls} URLs in batches of {self.batch_size}")

        batches = [urls[i:i + self.batch_size] for i in range(0, len(urls), self.batch_size)]

        results = []
        for i, batch_urls in enumerate(batches):
            logger.info(f"Processing batch {i+1}/{len(batches)} ({len(batch_urls)} URLs)")
            results.extend(await self.process_batch(batch_urls, i+1))
            self.db.insert_metadata(self.metadata)

        return results

    def save_results(self) -> None:
        """Save metadata to the database."""
        self.db.insert_metadata(self.metadata)
        logger.info(f"Results saved to database: {self.db_path}")
        logger.info(f"Attempted {self.metadata['total_sites_attempted']} pages")
        logger.info(f"Successfully audited {self.metadata['total_sites_succeeded']} pages")

    def close(self) -> None:
        self.db.close()

    def export_to_json(self, output_file: str) -> None:
        self.db.export_to_json(output_file)
        logger.info(f"Exported database to JSON: {output_file}")


def print_outcome(record: Dict[str, Any]) -> None:
    """Print one audit record as JSON on stdout."""
    print(json.dumps(record, indent=2))


async def main():
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(description="Audit the XSS protection of websites' Content Security Policy")

    parser.add_argument("--url", action="append", default=[], help="URL to audit (can be repeated)")
    parser.add_argument("--input", help="Path to input file with URLs (CSV format rank,domain or one URL per line)")
    parser.add_argument("--db", default="data/results/csp_xss_audit.db", help="Path to SQLite database file")
    parser.add_argument("--output", help="Optional path to export results as JSON")
    parser.add_argument("--concurrency", type=int, default=10, help="Number of concurrent requests")
    parser.add_argument("--timeout", type=int, default=20, help="Request timeout in seconds")
    parser.add_argument("--batch-size", type=int, default=100, help="Number of pages to audit in each batch")
    parser.add_argument("--limit", type=int, help="Limit the number of URLs to audit (for testing)")
    parser.add_argument("--log-file", help="Optional file to write logs to")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_file=args.log_file,
    )

    urls = list(args.url)
    if args.input:
        if not os.path.exists(args.input):
            logger.error(f"Input file not found: {args.input}")
            sys.exit(1)
        urls.extend(read_urls(args.input))

    if args.limit and args.limit > 0:
        logger.info(f"Limiting to first {args.limit} URLs")
        urls = urls[:args.limit]

    if not urls:
        logger.error("No URLs to audit; use --url or --input")
        sys.exit(1)

    logger.info(f"Loaded {len(urls)} URLs")

    auditor = CSPXSSAuditor(
        concurrency=args.concurrency,
        timeout=args.timeout,
        db_path=args.db,
        batch_size=args.batch_size
    )

    try:
        start_time = time.time()
        results = await auditor.process_urls(urls)
        end_time = time.time()

        auditor.save_results()

        # Single pages are echoed for quick inspection
        if len(urls) == 1:
            print_outcome(results[0])

        if args.output:
            auditor.export_to_json(args.output)

        logger.info(f"Audit completed in {end_time - start_time:.2f} seconds")
    finally:
        auditor.close()


if __name__ == "__main__":
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    asyncio.run(main())
