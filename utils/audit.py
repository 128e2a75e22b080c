"""
CSP XSS audit: turns a page snapshot into a scored findings table.

The engine drives a policy evaluator (any callable taking the list of raw
policies and returning an EvaluationResult) and never keeps state between
calls.
"""
import logging
from typing import Callable, List, Sequence, Tuple

from utils.evaluator import EvaluationResult, evaluate_raw_csps_for_xss
from utils.models import (
    AuditOutcome,
    ClassifiedResult,
    Finding,
    PageSnapshot,
    Severity,
    TableHeading,
)
from utils.parser import get_raw_csps


logger = logging.getLogger(__name__)

Evaluator = Callable[[Sequence[str]], EvaluationResult]

UI_STRINGS = {
    "title": "Ensure CSP is effective against XSS attacks",
    "description": (
        "A strong Content Security Policy (CSP) significantly reduces the risk of "
        "cross-site scripting (XSS) attacks. [Learn more](https://web.dev/csp-xss/)"
    ),
    "no_csp": "No CSP found in enforcement mode",
    "meta_tag_message": (
        "The page contains a CSP defined in a <meta> tag. "
        "Consider defining the CSP in an HTTP header if you can."
    ),
    "column_description": "Description",
    "column_directive": "Directive",
    "column_severity": "Severity",
}

AUDIT_META = {
    "id": "csp-xss",
    "title": UI_STRINGS["title"],
    "description": UI_STRINGS["description"],
}

TABLE_HEADINGS = (
    TableHeading("description", "text", UI_STRINGS["column_description"], "description"),
    TableHeading("directive", "code", UI_STRINGS["column_directive"], "directive"),
    TableHeading("severity", "text", UI_STRINGS["column_severity"], "severity"),
)


def finding_to_table_item(finding: Finding, severity: Severity = None) -> ClassifiedResult:
    return ClassifiedResult(
        description=finding.description,
        directive=finding.directive,
        severity=severity,
    )


def construct_syntax_results(
    syntax_findings: Sequence[Sequence[Finding]],
    raw_csps: Sequence[str],
) -> List[ClassifiedResult]:
    """
    Group syntax findings under the policy they were found in.

    Args:
        syntax_findings: Syntax findings, indexed like raw_csps
        raw_csps: The evaluated policies

    Returns:
        One row per policy with at least one syntax finding
    """
    results = []
    for raw_csp, findings in zip(raw_csps, syntax_findings):
        items = tuple(finding_to_table_item(finding) for finding in findings)
        if not items:
            continue
        results.append(
            ClassifiedResult(
                description=raw_csp,
                severity=Severity.SYNTAX,
                sub_items=items,
                description_is_code=True,
            )
        )
    return results


def score_results(raw_csps: Sequence[str], bypasses: Sequence[Finding]) -> int:
    """Binary verdict: 0 when no policy is enforced or any bypass exists."""
    if not raw_csps or bypasses:
        return 0
    return 1


def construct_results(
    csp_headers: Sequence[str],
    csp_meta_tags: Sequence[str],
    evaluate: Evaluator = evaluate_raw_csps_for_xss,
) -> Tuple[int, List[ClassifiedResult]]:
    """
    Evaluate a page's policies and build the ordered findings table.

    Args:
        csp_headers: Policies delivered through HTTP headers
        csp_meta_tags: Policies delivered through <meta> tags
        evaluate: Policy evaluator

    Returns:
        Tuple of (score, results)
    """
    raw_csps = list(csp_headers) + list(csp_meta_tags)
    if not raw_csps:
        return score_results(raw_csps, []), [
            ClassifiedResult(
                description=UI_STRINGS["no_csp"],
                severity=Severity.HIGH,
                directive=None,
            )
        ]

    evaluation = evaluate(raw_csps)

    results = construct_syntax_results(evaluation.syntax, raw_csps)
    results.extend(finding_to_table_item(f, Severity.HIGH) for f in evaluation.bypasses)
    results.extend(finding_to_table_item(f, Severity.MEDIUM) for f in evaluation.warnings)

    # One advisory however many policies came from meta tags.
    if csp_meta_tags:
        results.append(
            ClassifiedResult(
                description=UI_STRINGS["meta_tag_message"],
                severity=Severity.MEDIUM,
                directive=None,
            )
        )

    return score_results(raw_csps, evaluation.bypasses), results


def audit(
    snapshot: PageSnapshot,
    evaluate: Evaluator = evaluate_raw_csps_for_xss,
) -> AuditOutcome:
    """
    Audit the CSP of a captured page.

    Evaluator errors propagate to the caller; there is no partial outcome.

    Args:
        snapshot: Headers and <meta> elements of the loaded page
        evaluate: Policy evaluator

    Returns:
        AuditOutcome for the page
    """
    csp_headers, csp_meta_tags = get_raw_csps(snapshot.headers, snapshot.meta_elements)
    logger.debug(
        "%s: %d CSP header(s), %d CSP meta tag(s)",
        snapshot.url, len(csp_headers), len(csp_meta_tags),
    )

    score, results = construct_results(csp_headers, csp_meta_tags, evaluate)

    # Unreachable while a page without policies gets the no-CSP row
    not_applicable = not (csp_headers or csp_meta_tags) and not results

    return AuditOutcome(
        score=score,
        results=tuple(results),
        not_applicable=not_applicable,
        headings=TABLE_HEADINGS,
    )
