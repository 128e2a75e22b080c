#!/usr/bin/env python3
"""
CSP Audit Summary - Tool for summarizing stored CSP XSS audits.

This script reads the SQLite database written by the CSP XSS Auditor and
reports pass rates and the most common findings across all audited pages.
"""
import argparse
import json
import os
from typing import Any, Dict

import pandas as pd

from utils.audit import UI_STRINGS
from utils.database import AuditDatabase
from utils.logger import setup_logger


logger = setup_logger("csp_audit_summary")


class CSPAuditSummary:
    """
    Summarizes audit outcomes stored by the auditor.
    """

    def __init__(
        self,
        db_path: str,
        output_file: str = "audit_summary.json",
        csv_output: str = None,
        skip_errors: bool = True,
        top: int = 10,
    ):
        """
        Initialize the summary.

        Args:
            db_path: Path to the SQLite database file
            output_file: Path to save the summary
            csv_output: Path to export a per-page CSV file
            skip_errors: Whether to exclude pages whose audit failed
            top: Number of entries in the most-common lists
        """
        self.db_path = db_path
        self.output_file = output_file
        self.csv_output = csv_output
        self.skip_errors = skip_errors
        self.top = top
        self.db = None

        self.results = {
            "metadata": {
                "input_file": db_path,
                "pages_analyzed": 0
            },
            "scores": {},
            "findings": {}
        }

    def connect_db(self) -> None:
        self.db = AuditDatabase(self.db_path)

    def close_db(self) -> None:
        if self.db:
            self.db.close()
            self.db = None

    def _audits(self) -> pd.DataFrame:
        df = self.db.get_audits_dataframe()
        if self.skip_errors:
            df = df[df.error.isna()]
        return df

    def _rows(self) -> pd.DataFrame:
        df = self.db.get_rows_dataframe()
        if self.skip_errors:
            df = df[df.error.isna()]
        return df

    def analyze_scores(self) -> None:
        """Count passing, failing, CSP-less and meta-tag pages."""
        df = self._audits()
        total = len(df)

        def percent(count):
            return round(count / total * 100, 2) if total > 0 else 0

        passed = int((df.score == 1).sum())
        failed = int((df.score == 0).sum())
        no_csp = int(((df.csp_header_count == 0) & (df.csp_meta_tag_count == 0) & df.error.isna()).sum())
        meta_tag = int((df.csp_meta_tag_count > 0).sum())
        report_only = int((df.has_report_only == 1).sum())

        self.results["scores"] = {
            "total_pages": total,
            "passed": passed,
            "passed_percent": percent(passed),
            "failed": failed,
            "failed_percent": percent(failed),
            "without_csp": no_csp,
            "without_csp_percent": percent(no_csp),
            "with_meta_tag_csp": meta_tag,
            "with_meta_tag_csp_percent": percent(meta_tag),
            "with_report_only_header": report_only,
            "with_report_only_header_percent": percent(report_only),
        }
        self.results["metadata"]["pages_analyzed"] = total

        logger.info(f"CSP XSS audit: {passed} of {total} pages pass ({percent(passed)}%)")

    def analyze_findings(self) -> None:
        """Break rows down by severity and list the most common findings."""
        df = self._rows()
        top_level = df[df.parent_position.isna()]
        sub_items = df[df.parent_position.notna()]

        # The no-CSP row says nothing about a policy, keep it out of the rankings
        policy_rows = top_level[top_level.description != UI_STRINGS["no_csp"]]
        findings = pd.concat([
            policy_rows[policy_rows.severity.isin(["High", "Medium"])],
            sub_items,
        ])

        severity_counts = top_level.severity.value_counts()
        directive_counts = findings.directive.dropna().value_counts().head(self.top)
        description_counts = findings.description.value_counts().head(self.top)
        bypass_counts = (
            policy_rows[policy_rows.severity == "High"]
            .directive.dropna().value_counts().head(self.top)
        )

        self.results["findings"] = {
            "rows_by_severity": {k: int(v) for k, v in severity_counts.items()},
            "syntax_issues": int(len(sub_items)),
            "most_common_directives": {k: int(v) for k, v in directive_counts.items()},
            "most_common_bypass_directives": {k: int(v) for k, v in bypass_counts.items()},
            "most_common_findings": [
                {"description": k, "count": int(v)} for k, v in description_counts.items()
            ],
        }

        logger.info(f"Findings: {dict(self.results['findings']['rows_by_severity'])}")

    def export_to_csv(self) -> None:
        """Export one line per page, with its row counts by severity."""
        if not self.csv_output:
            return

        df = self._audits()
        rows = self._rows()
        top_level = rows[rows.parent_position.isna()]

        df_pivot = pd.pivot_table(
            top_level,
            index='audit_id',
            columns='severity',
            values='position',
            aggfunc='count',
            fill_value=0
        )
        df_pivot.columns = [f"{col.lower()}_rows" for col in df_pivot.columns]

        result_df = pd.merge(df, df_pivot, how='left', left_on='id', right_index=True)
        result_df['passed'] = (result_df.score == 1).map({True: 'Yes', False: 'No'})

        export_columns = [
            'url', 'passed', 'score', 'csp_header_count', 'csp_meta_tag_count',
            'has_report_only', 'status_code', 'error'
        ]
        export_columns.extend([col for col in df_pivot.columns])

        os.makedirs(os.path.dirname(os.path.abspath(self.csv_output)), exist_ok=True)
        result_df[export_columns].to_csv(self.csv_output, index=False)

        logger.info(f"CSV data exported to {self.csv_output}")

    def run_all_analysis(self) -> Dict[str, Any]:
        """Run all analysis tasks and write the JSON summary."""
        try:
            self.connect_db()

            logger.info("Starting CSP audit summary...")
            self.analyze_scores()
            self.analyze_findings()

            os.makedirs(os.path.dirname(os.path.abspath(self.output_file)), exist_ok=True)
            with open(self.output_file, 'w') as f:
                json.dump(self.results, f, indent=2)

            if self.csv_output:
                self.export_to_csv()

            logger.info(f"Summary complete. Results saved to {self.output_file}")
        finally:
            self.close_db()

        return self.results


def main():
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(description="Summarize stored CSP XSS audits")

    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    parser.add_argument("--output", default="data/results/audit_summary.json", help="Path to output JSON file for the summary")
    parser.add_argument("--csv", help="Export one line per page to a CSV file")
    parser.add_argument("--include-errors", action="store_true", help="Include pages whose audit failed")
    parser.add_argument("--top", type=int, default=10, help="Number of entries in the most-common lists")

    args = parser.parse_args()

    summary = CSPAuditSummary(
        db_path=args.db,
        output_file=args.output,
        csv_output=args.csv,
        skip_errors=not args.include_errors,
        top=args.top
    )

    summary.run_all_analysis()


if __name__ == "__main__":
    main()
