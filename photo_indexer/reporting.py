import csv
import logging
from collections import Counter
from pathlib import Path

from .models import ScanReport, WatchReport


class ReportGenerator:
    """
    Turns scan/watch reports into log summaries and CSV files, so entries
    that were skipped during traversal stay visible after the run.
    """

    def summarize_scan(self, report: ScanReport) -> str:
        status = "aborted" if report.aborted else "complete"
        reasons = Counter(entry.reason.split(':')[0] for entry in report.skipped)
        summary = (
            f"Scan {status}: found {report.found}, inserted {report.inserted} "
            f"in {report.batches_committed} batch(es), skipped {len(report.skipped)}"
        )
        if reasons:
            summary += " (" + ", ".join(f"{reason}: {n}" for reason, n in reasons.most_common()) + ")"
        return summary

    def summarize_watch(self, report: WatchReport) -> str:
        return (
            f"Watch: {report.added} added, {report.changed} changed, {report.removed} removed, "
            f"{report.ignored} ignored, {len(report.errors)} error(s)"
        )

    def write_scan_csv(self, report: ScanReport, output_csv: Path):
        """One row per skipped entry."""
        headers = ["Path", "Reason"]
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(headers)
            for entry in report.skipped:
                writer.writerow([entry.path, entry.reason])
        logging.info(f"Wrote {len(report.skipped)} skipped entries to {output_csv}")
