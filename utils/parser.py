"""
Utility functions for extracting and parsing Content Security Policies.
"""
from typing import Dict, Iterable, List, Optional, Tuple
import re

from bs4 import BeautifulSoup

from utils.models import Header, MetaElement, PolicySource, RawPolicy


CSP_HEADER_NAME = "content-security-policy"

KEYWORDS = {
    "'self'",
    "'none'",
    "'unsafe-inline'",
    "'unsafe-eval'",
    "'wasm-eval'",
    "'wasm-unsafe-eval'",
    "'strict-dynamic'",
    "'unsafe-hashed-attributes'",
    "'unsafe-hashes'",
    "'report-sample'",
    "'block'",
    "'allow'",
}

URL_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][+a-zA-Z0-9.-]*:$")


def is_keyword(value: str) -> bool:
    return value in KEYWORDS


def is_url_scheme(value: str) -> bool:
    return bool(URL_SCHEME_PATTERN.match(value))


def normalize_directive_value(value: str) -> str:
    """Lower-case keywords and URL schemes, keep everything else verbatim."""
    value = value.strip()
    lowered = value.lower()
    if is_keyword(lowered) or is_url_scheme(value):
        return lowered
    return value


def parse_csp_header(header: Optional[str]) -> Dict[str, List[str]]:
    """
    Parse a single Content Security Policy into a structured dictionary.

    Directive names are lower-cased. Only the first occurrence of a repeated
    directive is kept, as browsers ignore the later ones.

    Args:
        header: One raw policy (no commas)

    Returns:
        Dictionary mapping directives to their values, in policy order
    """
    if not header:
        return {}

    directives = {}

    for part in header.split(';'):
        components = part.split()
        if not components:
            continue

        directive = components[0].lower()
        if directive in directives:
            continue

        values = []
        for raw_value in components[1:]:
            value = normalize_directive_value(raw_value)
            if value not in values:
                values.append(value)

        directives[directive] = values

    return directives


def split_policies(value: Optional[str]) -> List[str]:
    """
    Split a header or meta value into its comma-separated policies.

    Each segment is enforced independently. Segments that contain only
    whitespace are dropped; the others are returned verbatim.
    """
    return [
        policy for policy in (value or "").split(',')
        if re.sub(r"\s", "", policy)
    ]


def get_raw_csps(
    headers: Iterable[Header],
    meta_elements: Iterable[MetaElement],
) -> Tuple[List[str], List[str]]:
    """
    Collect every enforced CSP of a page.

    Args:
        headers: Response headers of the main document
        meta_elements: <meta> elements of the document

    Returns:
        Tuple containing:
            - Policies delivered through Content-Security-Policy headers
            - Policies delivered through <meta http-equiv> tags
    """
    csp_meta_tags = []
    for meta in meta_elements:
        if meta.http_equiv and meta.http_equiv.lower() == CSP_HEADER_NAME:
            csp_meta_tags.extend(split_policies(meta.content))

    csp_headers = []
    for header in headers:
        if header.name.lower() == CSP_HEADER_NAME:
            csp_headers.extend(split_policies(header.value))

    return csp_headers, csp_meta_tags


def get_raw_policies(
    headers: Iterable[Header],
    meta_elements: Iterable[MetaElement],
) -> List[RawPolicy]:
    """Same as get_raw_csps, flattened headers first and tagged with their source."""
    csp_headers, csp_meta_tags = get_raw_csps(headers, meta_elements)
    return (
        [RawPolicy(text, PolicySource.HEADER) for text in csp_headers]
        + [RawPolicy(text, PolicySource.META_TAG) for text in csp_meta_tags]
    )


def parse_meta_elements(html_content: str) -> List[MetaElement]:
    """
    Parse every <meta> element out of an HTML document.

    Args:
        html_content: HTML content as a string

    Returns:
        List of MetaElement in document order
    """
    soup = BeautifulSoup(html_content, "html.parser")
    meta_elements = []
    for tag in soup.find_all("meta"):
        # html.parser already lower-cases attribute names
        meta_elements.append(
            MetaElement(
                http_equiv=tag.get("http-equiv"),
                content=tag.get("content"),
            )
        )
    return meta_elements
