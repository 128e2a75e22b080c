"""
Data models shared by the CSP XSS audit.

Every type here is an immutable value created and consumed within a single
audit run.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Header:
    """One HTTP response header as captured from the page."""
    name: str
    value: str


@dataclass(frozen=True)
class MetaElement:
    """A parsed <meta> element. Both attributes may be missing."""
    http_equiv: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True)
class PageSnapshot:
    """Captured artifacts of a loaded page."""
    url: str
    headers: Tuple[Header, ...] = ()
    meta_elements: Tuple[MetaElement, ...] = ()


class PolicySource(Enum):
    HEADER = "header"
    META_TAG = "meta-tag"


@dataclass(frozen=True)
class RawPolicy:
    """A single independently enforced CSP string and where it came from."""
    text: str
    source: PolicySource


class FindingKind(Enum):
    SYNTAX = "syntax"
    BYPASS = "bypass"
    WARNING = "warning"


class FindingType(Enum):
    # Parser checks
    MISSING_SEMICOLON = "missing-semicolon"
    UNKNOWN_DIRECTIVE = "unknown-directive"
    INVALID_KEYWORD = "invalid-keyword"
    NONCE_CHARSET = "nonce-charset"
    NONCE_LENGTH = "nonce-length"
    DEPRECATED_DIRECTIVE = "deprecated-directive"

    # Security checks
    MISSING_DIRECTIVES = "missing-directives"
    SCRIPT_UNSAFE_INLINE = "script-unsafe-inline"
    PLAIN_URL_SCHEMES = "plain-url-schemes"
    PLAIN_WILDCARD = "plain-wildcard"
    STRICT_DYNAMIC = "strict-dynamic"

    # Backward compatibility checks
    UNSAFE_INLINE_FALLBACK = "unsafe-inline-fallback"
    ALLOWLIST_FALLBACK = "allowlist-fallback"
    REQUIRE_TRUSTED_TYPES_FOR_SCRIPTS = "require-trusted-types-for-scripts"

    # Reporting checks
    REPORTING_DESTINATION_MISSING = "reporting-destination-missing"
    REPORT_TO_ONLY = "report-to-only"


@dataclass(frozen=True)
class Finding:
    """The evaluator's verdict on one weakness of a policy."""
    type: FindingType
    description: str
    kind: FindingKind
    directive: Optional[str] = None
    value: Optional[str] = None


class Severity(Enum):
    """Severity labels of a result row."""
    HIGH = "High"
    MEDIUM = "Medium"
    SYNTAX = "Syntax"

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClassifiedResult:
    """
    A row of the findings table.

    Syntax rows use the raw policy text as a code-formatted description and
    list the policy's syntax findings as sub-items.
    """
    description: str
    severity: Optional[Severity] = None
    directive: Optional[str] = None
    sub_items: Tuple["ClassifiedResult", ...] = ()
    description_is_code: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.description_is_code:
            description = {"type": "code", "value": self.description}
        else:
            description = self.description
        item = {
            "description": description,
            "directive": self.directive,
            "severity": self.severity.label if self.severity else None,
        }
        if self.sub_items:
            item["subItems"] = {
                "type": "subitems",
                "items": [sub_item.to_dict() for sub_item in self.sub_items],
            }
        return item


@dataclass(frozen=True)
class TableHeading:
    key: str
    item_type: str
    text: str
    sub_items_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        heading = {"key": self.key, "itemType": self.item_type, "text": self.text}
        if self.sub_items_key:
            heading["subItemsHeading"] = {"key": self.sub_items_key}
        return heading


@dataclass(frozen=True)
class AuditOutcome:
    """Final product of one audit: binary score plus the findings table."""
    score: int
    results: Tuple[ClassifiedResult, ...]
    not_applicable: bool
    headings: Tuple[TableHeading, ...] = field(default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "notApplicable": self.not_applicable,
            "details": {
                "type": "table",
                "headings": [heading.to_dict() for heading in self.headings],
                "items": [result.to_dict() for result in self.results],
            },
        }
