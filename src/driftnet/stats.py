"""Statistics for crawl results and run summaries."""

import csv
from collections import Counter
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
import structlog

from driftnet.models import CrawlResult, CrawlRunResult
from driftnet.writers import read_results

logger = structlog.get_logger()


class CrawlStats:
    """Analyzes crawl results and formats run summaries."""

    def __init__(self, results: list[CrawlResult]):
        """
        Initialize stats analyzer.

        Args:
            results: Crawl results to analyze
        """
        self.results = results
        self._stats_cache: dict[str, Any] = {}

    @classmethod
    def from_file(cls, file_path: Path) -> "CrawlStats":
        return cls(read_results(file_path))

    def compute(self) -> dict[str, Any]:
        """
        Compute all statistics.

        Returns:
            Dictionary with result stats
        """
        if self._stats_cache:
            return self._stats_cache

        total = len(self.results)
        if total == 0:
            return {"total_pages": 0}

        contents = [r.scraped_content for r in self.results if r.scraped_content]
        total_links = sum(len(c.links) for c in contents)
        text_lengths = [len(c.text) for c in contents if c.text]
        depths = Counter(r.request.depth for r in self.results if r.request)
        domains = Counter(urlparse(r.url).netloc for r in self.results)

        self._stats_cache = {
            "total_pages": total,
            "total_links": total_links,
            "avg_links_per_page": round(total_links / total, 2),
            "total_text_size": sum(text_lengths),
            "pages_with_text": len(text_lengths),
            "pages_with_title": sum(1 for c in contents if c.title),
            "max_depth": max(depths) if depths else 0,
            "pages_by_depth": dict(depths),
            "unique_domains": len(domains),
            "top_domains": [{"domain": d, "count": c} for d, c in domains.most_common(10)],
            "status_codes": dict(Counter(r.status_code for r in self.results)),
            "content_types": dict(Counter(r.content_type for r in self.results)),
        }
        return self._stats_cache

    def format_summary(self) -> str:
        """
        Format stats as human-readable summary.

        Returns:
            Formatted string with statistics
        """
        stats = self.compute()

        if stats["total_pages"] == 0:
            return "No pages found."

        lines = [
            "=" * 60,
            "DRIFTNET Crawl Statistics",
            "=" * 60,
            "",
            f"Total Pages: {stats['total_pages']:,}",
            f"Total Links: {stats['total_links']:,}",
            f"Avg Links/Page: {stats['avg_links_per_page']}",
            f"Total Text: {_format_bytes(stats['total_text_size'])}",
            "",
            "Domains:",
            f"  Unique Domains: {stats['unique_domains']}",
        ]

        for item in stats["top_domains"][:5]:
            lines.append(f"    - {item['domain']}: {item['count']} pages")

        lines.extend(["", "Depth Distribution:"])
        for depth in sorted(stats["pages_by_depth"]):
            count = stats["pages_by_depth"][depth]
            lines.append(f"  Depth {depth}: {count:>4} {'#' * min(50, count)}")

        lines.extend(["", "Status Codes:"])
        for code, count in sorted(stats["status_codes"].items()):
            lines.append(f"  {code}: {count}")

        lines.extend(["", "=" * 60])
        return "\n".join(lines)

    def export_csv(self, output_path: Path):
        """
        Export stats to CSV file.

        Args:
            output_path: Path to output CSV file
        """
        stats = self.compute()

        with open(output_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)

            writer.writerow(["Metric", "Value"])
            writer.writerow(["Total Pages", stats["total_pages"]])
            writer.writerow(["Total Links", stats.get("total_links", 0)])
            writer.writerow(["Avg Links per Page", stats.get("avg_links_per_page", 0)])
            writer.writerow(["Total Text Size (bytes)", stats.get("total_text_size", 0)])
            writer.writerow(["Unique Domains", stats.get("unique_domains", 0)])
            writer.writerow(["Max Depth", stats.get("max_depth", 0)])
            writer.writerow([])

            writer.writerow(["Top Domains", "Count"])
            for item in stats.get("top_domains", []):
                writer.writerow([item["domain"], item["count"]])

        logger.info("exported_stats_csv", path=str(output_path))


def format_run_summary(result: CrawlRunResult) -> str:
    """Human-readable summary of one engine run, including top error groups."""
    stats = result.stats
    lines = [
        "=" * 60,
        "DRIFTNET Run Summary",
        "=" * 60,
        "",
        f"Duration: {result.duration:.2f}s",
        f"Requests: {stats.total:,} total",
        f"  Completed: {stats.completed:,}",
        f"  Failed: {stats.failed:,}",
        f"  Pending: {stats.pending:,}",
    ]

    if result.errors:
        retried = sum(1 for e in result.errors if e.will_retry)
        lines.extend(["", f"Errors: {len(result.errors)} attempts failed ({retried} retried)"])
        for group in result.error_groups[:5]:
            lines.append(f"  {group['count']:>4}x {group['error_type']}: {group['message'][:80]}")

    if stats.total:
        rate = stats.completed / result.duration if result.duration > 0 else 0.0
        lines.extend(["", f"Throughput: {rate:.2f} pages/s"])

    lines.extend(["", "=" * 60])
    return "\n".join(lines)


def _format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} TB"
