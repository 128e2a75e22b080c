"""
XSS-focused evaluation of Content Security Policies.

The checks follow the csp-evaluator rules used for XSS audits. A set of
policies is evaluated as a whole: the browser enforces every policy, so a
weakness only counts as a bypass when no policy in the set blocks it.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import re

from utils.models import Finding, FindingKind, FindingType
from utils.parser import is_keyword, parse_csp_header, KEYWORDS


class Directive:
    # Fetch directives
    CHILD_SRC = "child-src"
    CONNECT_SRC = "connect-src"
    DEFAULT_SRC = "default-src"
    FONT_SRC = "font-src"
    FRAME_SRC = "frame-src"
    IMG_SRC = "img-src"
    MEDIA_SRC = "media-src"
    OBJECT_SRC = "object-src"
    SCRIPT_SRC = "script-src"
    SCRIPT_SRC_ATTR = "script-src-attr"
    SCRIPT_SRC_ELEM = "script-src-elem"
    STYLE_SRC = "style-src"
    STYLE_SRC_ATTR = "style-src-attr"
    STYLE_SRC_ELEM = "style-src-elem"
    PREFETCH_SRC = "prefetch-src"
    MANIFEST_SRC = "manifest-src"
    WORKER_SRC = "worker-src"

    # Document directives
    BASE_URI = "base-uri"
    PLUGIN_TYPES = "plugin-types"
    SANDBOX = "sandbox"
    DISOWN_OPENER = "disown-opener"

    # Navigation directives
    FORM_ACTION = "form-action"
    FRAME_ANCESTORS = "frame-ancestors"
    NAVIGATE_TO = "navigate-to"

    # Reporting directives
    REPORT_TO = "report-to"
    REPORT_URI = "report-uri"

    # Other directives
    BLOCK_ALL_MIXED_CONTENT = "block-all-mixed-content"
    UPGRADE_INSECURE_REQUESTS = "upgrade-insecure-requests"
    REFLECTED_XSS = "reflected-xss"
    REFERRER = "referrer"
    REQUIRE_SRI_FOR = "require-sri-for"
    TRUSTED_TYPES = "trusted-types"
    REQUIRE_TRUSTED_TYPES_FOR = "require-trusted-types-for"
    WEBRTC = "webrtc"


DIRECTIVES = {
    value for name, value in vars(Directive).items() if not name.startswith("_")
}

FETCH_DIRECTIVES = {
    Directive.CHILD_SRC,
    Directive.CONNECT_SRC,
    Directive.DEFAULT_SRC,
    Directive.FONT_SRC,
    Directive.FRAME_SRC,
    Directive.IMG_SRC,
    Directive.MANIFEST_SRC,
    Directive.MEDIA_SRC,
    Directive.OBJECT_SRC,
    Directive.SCRIPT_SRC,
    Directive.SCRIPT_SRC_ATTR,
    Directive.SCRIPT_SRC_ELEM,
    Directive.STYLE_SRC,
    Directive.STYLE_SRC_ATTR,
    Directive.STYLE_SRC_ELEM,
    Directive.WORKER_SRC,
}

DIRECTIVES_CAUSING_XSS = [
    Directive.SCRIPT_SRC,
    Directive.OBJECT_SRC,
    Directive.BASE_URI,
]

URL_SCHEMES_CAUSING_XSS = ["data:", "http:", "https:"]

TRUSTED_TYPES_SINK_SCRIPT = "'script'"

STRICT_NONCE_PATTERN = re.compile(r"^'nonce-[a-zA-Z0-9+/_-]+[=]{0,2}'$")
NONCE_PATTERN = re.compile(r"^'nonce-(.+)'$")
STRICT_HASH_PATTERN = re.compile(r"^'(sha256|sha384|sha512)-[a-zA-Z0-9+/]+[=]{0,2}'$")

UI_STRINGS = {
    "missing_base_uri": (
        "Missing base-uri allows injected <base> tags to set the base URL for all "
        "relative URLs (e.g. scripts) to an attacker controlled domain. "
        "Consider setting base-uri to 'none' or 'self'."
    ),
    "missing_script_src": (
        "script-src directive is missing. This can allow the execution of unsafe scripts."
    ),
    "missing_object_src": (
        "Missing object-src allows the injection of plugins that execute unsafe "
        "scripts. Consider setting object-src to 'none' if you can."
    ),
    "strict_dynamic": (
        "Host allowlists can frequently be bypassed. Consider using CSP nonces or "
        "hashes instead, along with 'strict-dynamic' if necessary."
    ),
    "unsafe_inline": (
        "'unsafe-inline' allows the execution of unsafe in-page scripts and event "
        "handlers. Consider using CSP nonces or hashes to allow scripts individually."
    ),
    "unsafe_inline_fallback": (
        "Consider adding 'unsafe-inline' (ignored by browsers supporting "
        "nonces/hashes) to be backward compatible with older browsers."
    ),
    "allowlist_fallback": (
        "Consider adding https: and http: URL schemes (ignored by browsers "
        "supporting 'strict-dynamic') to be backward compatible with older browsers."
    ),
    "require_trusted_types": (
        "Consider requiring Trusted Types for scripts to lock down DOM XSS injection "
        "sinks. You can do this by adding \"require-trusted-types-for 'script'\" "
        "to your policy."
    ),
    "report_to_only": (
        "The reporting destination is only configured via the report-to directive. "
        "This directive is only supported in Chromium-based browsers so it is "
        "recommended to also use a report-uri directive."
    ),
    "reporting_destination_missing": (
        "No CSP configures a reporting destination. This makes it difficult to "
        "maintain the CSP over time and monitor for any breakages."
    ),
    "nonce_length": "Nonces should be at least 8 characters long.",
    "nonce_charset": "Nonces should use the base64 charset.",
    "missing_semicolon": (
        "Did you forget the semicolon? {keyword} seems to be a directive, not a keyword."
    ),
    "unknown_directive": "Unknown CSP directive.",
    "directive_colon": "CSP directives don't end with a colon.",
    "missing_ticks": "Did you forget to surround {keyword} with single quotes?",
    "unknown_keyword": "{keyword} seems to be an invalid keyword.",
    "deprecated_reflected_xss": (
        "reflected-xss is deprecated since CSP2. "
        "Please, use the X-XSS-Protection header instead."
    ),
    "deprecated_referrer": (
        "referrer is deprecated since CSP2. "
        "Please, use the Referrer-Policy header instead."
    ),
    "deprecated_disown_opener": (
        "disown-opener is deprecated since CSP3. "
        "Please, use the Cross-Origin-Opener-Policy header instead."
    ),
    "plain_wildcards": (
        "Avoid using plain wildcards ({keyword}) in this directive. Plain wildcards "
        "allow scripts to be sourced from an unsafe domain."
    ),
    "plain_url_scheme": (
        "Avoid using plain URL schemes ({keyword}) in this directive. Plain URL "
        "schemes allow scripts to be sourced from an unsafe domain."
    ),
}


def make_finding(
    finding_type: FindingType,
    kind: FindingKind,
    message: str,
    directive: Optional[str] = None,
    value: Optional[str] = None,
) -> Finding:
    """Build a Finding whose description is looked up in UI_STRINGS."""
    description = UI_STRINGS[message].format(keyword=value)
    return Finding(
        type=finding_type,
        description=description,
        kind=kind,
        directive=directive,
        value=value,
    )


def is_nonce(value: str, strict_check: bool = True) -> bool:
    pattern = STRICT_NONCE_PATTERN if strict_check else NONCE_PATTERN
    return bool(pattern.match(value))


def is_hash(value: str) -> bool:
    return bool(STRICT_HASH_PATTERN.match(value))


def get_scheme_free_url(url: str) -> str:
    url = re.sub(r"^\w[+\w.-]*://", "", url)
    return re.sub(r"^//", "", url)


class ParsedCsp:
    """A single policy split into directives, with fallback lookups."""

    def __init__(self, directives: Dict[str, List[str]]):
        self.directives = directives

    @classmethod
    def from_string(cls, raw_csp: str) -> "ParsedCsp":
        return cls(parse_csp_header(raw_csp))

    def clone(self) -> "ParsedCsp":
        return ParsedCsp({
            directive: values[:] for directive, values in self.directives.items()
        })

    def get_effective_directive(self, directive: str) -> str:
        # Only fetch directives fall back to default-src.
        if directive not in self.directives and directive in FETCH_DIRECTIVES:
            return Directive.DEFAULT_SRC
        return directive

    def get_effective_directives(self, directives: Sequence[str]) -> List[str]:
        effective = []
        for directive in directives:
            name = self.get_effective_directive(directive)
            if name not in effective:
                effective.append(name)
        return effective

    def script_values(self) -> List[str]:
        directive = self.get_effective_directive(Directive.SCRIPT_SRC)
        return self.directives.get(directive, [])

    def policy_has_script_nonces(self) -> bool:
        return any(is_nonce(value) for value in self.script_values())

    def policy_has_script_hashes(self) -> bool:
        return any(is_hash(value) for value in self.script_values())

    def policy_has_strict_dynamic(self) -> bool:
        return "'strict-dynamic'" in self.script_values()

    def get_effective_csp(self) -> "ParsedCsp":
        """
        Return the policy as a CSP3 browser enforces it.

        'unsafe-inline' is ignored next to a nonce or hash, and 'strict-dynamic'
        disables host and scheme sources, 'self' and 'unsafe-inline'.
        """
        effective_csp = self.clone()
        directive = effective_csp.get_effective_directive(Directive.SCRIPT_SRC)
        values = self.directives.get(directive, [])
        effective_values = effective_csp.directives.get(directive)

        if effective_values and (
            self.policy_has_script_nonces() or self.policy_has_script_hashes()
        ):
            if "'unsafe-inline'" in effective_values:
                effective_values.remove("'unsafe-inline'")

        if effective_values and self.policy_has_strict_dynamic():
            for value in values:
                if (
                    not value.startswith("'")
                    or value in ("'self'", "'unsafe-inline'")
                ) and value in effective_values:
                    effective_values.remove(value)

        return effective_csp


Check = Callable[[ParsedCsp], List[Finding]]


def at_least_one_passes(parsed_csps: Sequence[ParsedCsp], check: Check) -> List[Finding]:
    """
    Report a weakness only when every policy has it.

    The findings of the first policy stand for the whole set, so a weakness
    shared by identical policies yields one row.
    """
    results = [check(parsed_csp) for parsed_csp in parsed_csps]
    if not results or any(not findings for findings in results):
        return []
    return results[0]


def at_least_one_fails(parsed_csps: Sequence[ParsedCsp], check: Check) -> List[Finding]:
    findings = []
    for parsed_csp in parsed_csps:
        findings.extend(check(parsed_csp))
    return findings


# Syntax checks

def check_nonce_length(parsed_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive, values in parsed_csp.directives.items():
        for value in values:
            match = NONCE_PATTERN.match(value)
            if not match:
                continue
            if len(match.group(1)) < 8:
                findings.append(make_finding(
                    FindingType.NONCE_LENGTH, FindingKind.SYNTAX,
                    "nonce_length", directive, value,
                ))
            if not is_nonce(value):
                findings.append(make_finding(
                    FindingType.NONCE_CHARSET, FindingKind.SYNTAX,
                    "nonce_charset", directive, value,
                ))
    return findings


def check_unknown_directive(parsed_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive in parsed_csp.directives:
        if directive in DIRECTIVES:
            continue
        message = "directive_colon" if directive.endswith(":") else "unknown_directive"
        findings.append(make_finding(
            FindingType.UNKNOWN_DIRECTIVE, FindingKind.SYNTAX, message, directive,
        ))
    return findings


DEPRECATED_DIRECTIVES = [
    (Directive.REFLECTED_XSS, "deprecated_reflected_xss"),
    (Directive.REFERRER, "deprecated_referrer"),
    (Directive.DISOWN_OPENER, "deprecated_disown_opener"),
]


def check_deprecated_directive(parsed_csp: ParsedCsp) -> List[Finding]:
    return [
        make_finding(FindingType.DEPRECATED_DIRECTIVE, FindingKind.SYNTAX, message, directive)
        for directive, message in DEPRECATED_DIRECTIVES
        if directive in parsed_csp.directives
    ]


def check_missing_semicolon(parsed_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive, values in parsed_csp.directives.items():
        for value in values:
            # A directive name inside a value list almost always means a lost ';'.
            if value in DIRECTIVES:
                findings.append(make_finding(
                    FindingType.MISSING_SEMICOLON, FindingKind.SYNTAX,
                    "missing_semicolon", directive, value,
                ))
    return findings


KEYWORDS_NO_TICKS = {keyword.strip("'") for keyword in KEYWORDS}


def check_invalid_keyword(parsed_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive, values in parsed_csp.directives.items():
        for value in values:
            if (
                value in KEYWORDS_NO_TICKS
                or value.startswith("nonce-")
                or re.match(r"^(sha256|sha384|sha512)-", value)
            ):
                findings.append(make_finding(
                    FindingType.INVALID_KEYWORD, FindingKind.SYNTAX,
                    "missing_ticks", directive, value,
                ))
                continue

            if not value.startswith("'"):
                continue

            if directive == Directive.REQUIRE_TRUSTED_TYPES_FOR:
                if value == TRUSTED_TYPES_SINK_SCRIPT:
                    continue
            elif directive == Directive.TRUSTED_TYPES:
                if value in ("'allow-duplicates'", "'none'"):
                    continue
            elif is_keyword(value) or is_hash(value) or is_nonce(value):
                continue

            findings.append(make_finding(
                FindingType.INVALID_KEYWORD, FindingKind.SYNTAX,
                "unknown_keyword", directive, value,
            ))
    return findings


SYNTAX_CHECKS = [
    check_nonce_length,
    check_unknown_directive,
    check_deprecated_directive,
    check_missing_semicolon,
    check_invalid_keyword,
]


# Bypass checks

def check_missing_script_src_directive(parsed_csp: ParsedCsp) -> List[Finding]:
    if (
        Directive.SCRIPT_SRC in parsed_csp.directives
        or Directive.DEFAULT_SRC in parsed_csp.directives
    ):
        return []
    return [make_finding(
        FindingType.MISSING_DIRECTIVES, FindingKind.BYPASS,
        "missing_script_src", Directive.SCRIPT_SRC,
    )]


def check_missing_object_src_directive(parsed_csp: ParsedCsp) -> List[Finding]:
    restrictions = parsed_csp.directives.get(Directive.OBJECT_SRC)
    if restrictions is None:
        restrictions = parsed_csp.directives.get(Directive.DEFAULT_SRC)
    if restrictions:
        return []
    return [make_finding(
        FindingType.MISSING_DIRECTIVES, FindingKind.BYPASS,
        "missing_object_src", Directive.OBJECT_SRC,
    )]


def check_multiple_missing_base_uri_directive(parsed_csps: Sequence[ParsedCsp]) -> List[Finding]:
    def needs_base_uri(parsed_csp):
        return parsed_csp.policy_has_script_nonces() or (
            parsed_csp.policy_has_script_hashes()
            and parsed_csp.policy_has_strict_dynamic()
        )

    def has_base_uri(parsed_csp):
        return Directive.BASE_URI in parsed_csp.directives

    if any(map(needs_base_uri, parsed_csps)) and not any(map(has_base_uri, parsed_csps)):
        return [make_finding(
            FindingType.MISSING_DIRECTIVES, FindingKind.BYPASS,
            "missing_base_uri", Directive.BASE_URI,
        )]
    return []


def check_strict_dynamic(effective_csp: ParsedCsp) -> List[Finding]:
    directive = effective_csp.get_effective_directive(Directive.SCRIPT_SRC)
    values = effective_csp.directives.get(directive, [])

    host_or_scheme_present = any(not value.startswith("'") for value in values)
    if host_or_scheme_present and "'strict-dynamic'" not in values:
        return [make_finding(
            FindingType.STRICT_DYNAMIC, FindingKind.BYPASS, "strict_dynamic", directive,
        )]
    return []


def check_script_unsafe_inline(effective_csp: ParsedCsp) -> List[Finding]:
    directive = effective_csp.get_effective_directive(Directive.SCRIPT_SRC)
    if "'unsafe-inline'" in effective_csp.directives.get(directive, []):
        return [make_finding(
            FindingType.SCRIPT_UNSAFE_INLINE, FindingKind.BYPASS,
            "unsafe_inline", directive, "'unsafe-inline'",
        )]
    return []


def check_wildcards(effective_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive in effective_csp.get_effective_directives(DIRECTIVES_CAUSING_XSS):
        for value in effective_csp.directives.get(directive, []):
            if get_scheme_free_url(value) == "*":
                findings.append(make_finding(
                    FindingType.PLAIN_WILDCARD, FindingKind.BYPASS,
                    "plain_wildcards", directive, value,
                ))
    return findings


def check_plain_url_schemes(effective_csp: ParsedCsp) -> List[Finding]:
    findings = []
    for directive in effective_csp.get_effective_directives(DIRECTIVES_CAUSING_XSS):
        for value in effective_csp.directives.get(directive, []):
            if value in URL_SCHEMES_CAUSING_XSS:
                findings.append(make_finding(
                    FindingType.PLAIN_URL_SCHEMES, FindingKind.BYPASS,
                    "plain_url_scheme", directive, value,
                ))
    return findings


# Warning checks

def check_unsafe_inline_fallback(parsed_csp: ParsedCsp) -> List[Finding]:
    if not parsed_csp.policy_has_script_nonces() and not parsed_csp.policy_has_script_hashes():
        return []
    directive = parsed_csp.get_effective_directive(Directive.SCRIPT_SRC)
    if "'unsafe-inline'" not in parsed_csp.directives.get(directive, []):
        return [make_finding(
            FindingType.UNSAFE_INLINE_FALLBACK, FindingKind.WARNING,
            "unsafe_inline_fallback", directive,
        )]
    return []


def check_allowlist_fallback(parsed_csp: ParsedCsp) -> List[Finding]:
    directive = parsed_csp.get_effective_directive(Directive.SCRIPT_SRC)
    values = parsed_csp.directives.get(directive, [])
    if "'strict-dynamic'" not in values:
        return []
    if not any(value in ("http:", "https:", "*") or "." in value for value in values):
        return [make_finding(
            FindingType.ALLOWLIST_FALLBACK, FindingKind.WARNING,
            "allowlist_fallback", directive,
        )]
    return []


def check_requires_trusted_types_for_scripts(parsed_csp: ParsedCsp) -> List[Finding]:
    values = parsed_csp.directives.get(Directive.REQUIRE_TRUSTED_TYPES_FOR, [])
    if TRUSTED_TYPES_SINK_SCRIPT not in values:
        return [make_finding(
            FindingType.REQUIRE_TRUSTED_TYPES_FOR_SCRIPTS, FindingKind.WARNING,
            "require_trusted_types", Directive.REQUIRE_TRUSTED_TYPES_FOR,
        )]
    return []


def check_has_configured_reporting(parsed_csp: ParsedCsp) -> List[Finding]:
    if parsed_csp.directives.get(Directive.REPORT_URI):
        return []
    if parsed_csp.directives.get(Directive.REPORT_TO):
        return [make_finding(
            FindingType.REPORT_TO_ONLY, FindingKind.WARNING,
            "report_to_only", Directive.REPORT_TO,
        )]
    return [make_finding(
        FindingType.REPORTING_DESTINATION_MISSING, FindingKind.WARNING,
        "reporting_destination_missing", Directive.REPORT_URI,
    )]


@dataclass
class EvaluationResult:
    """Findings for a set of policies; syntax is indexed like the input."""
    bypasses: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    syntax: List[List[Finding]] = field(default_factory=list)


def evaluate_for_syntax_errors(parsed_csps: Sequence[ParsedCsp]) -> List[List[Finding]]:
    return [
        [finding for check in SYNTAX_CHECKS for finding in check(parsed_csp)]
        for parsed_csp in parsed_csps
    ]


def evaluate_for_failure(parsed_csps: Sequence[ParsedCsp]) -> List[Finding]:
    """Collect the weaknesses that let an attacker execute script."""
    targets_xss_findings = (
        at_least_one_passes(parsed_csps, check_missing_script_src_directive)
        + at_least_one_passes(parsed_csps, check_missing_object_src_directive)
        + check_multiple_missing_base_uri_directive(parsed_csps)
    )

    effective_csps = [parsed_csp.get_effective_csp() for parsed_csp in parsed_csps]
    effective_csps_with_script = [
        csp for csp in effective_csps
        if csp.directives.get(csp.get_effective_directive(Directive.SCRIPT_SRC))
    ]
    robust_findings = (
        at_least_one_passes(effective_csps_with_script, check_strict_dynamic)
        + at_least_one_passes(effective_csps_with_script, check_script_unsafe_inline)
        + at_least_one_passes(effective_csps, check_wildcards)
        + at_least_one_passes(effective_csps, check_plain_url_schemes)
    )

    return targets_xss_findings + robust_findings


def evaluate_for_warnings(parsed_csps: Sequence[ParsedCsp]) -> List[Finding]:
    return (
        at_least_one_fails(parsed_csps, check_unsafe_inline_fallback)
        + at_least_one_fails(parsed_csps, check_allowlist_fallback)
        + at_least_one_fails(parsed_csps, check_requires_trusted_types_for_scripts)
        + at_least_one_passes(parsed_csps, check_has_configured_reporting)
    )


def evaluate_raw_csps_for_xss(raw_csps: Sequence[str]) -> EvaluationResult:
    """
    Evaluate a page's enforced policies for XSS weaknesses.

    Args:
        raw_csps: Every enforced policy of the page

    Returns:
        EvaluationResult with bypasses, warnings, and per-policy syntax findings
    """
    parsed_csps = [ParsedCsp.from_string(raw_csp) for raw_csp in raw_csps]
    return EvaluationResult(
        bypasses=evaluate_for_failure(parsed_csps),
        warnings=evaluate_for_warnings(parsed_csps),
        syntax=evaluate_for_syntax_errors(parsed_csps),
    )
