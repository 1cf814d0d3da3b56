"""Output writers for different formats."""

import json
from pathlib import Path
from typing import Iterable
import structlog

from driftnet.models import CrawlResult

logger = structlog.get_logger()

FORMATS = ("json", "jsonl", "parquet", "text")


class Writer:
    """Handles writing crawl results to different formats."""

    @staticmethod
    def write_json(results: list[CrawlResult], output_path: Path):
        """
        Write results to a JSON array file.

        Args:
            results: Crawl results
            output_path: Output file path
        """
        data = [result.model_dump(mode="json") for result in results]

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info("wrote_json", path=str(output_path), results=len(results))

    @staticmethod
    def write_jsonl(results: list[CrawlResult], output_path: Path):
        """
        Write results to JSONL (newline-delimited JSON) file.

        Args:
            results: Crawl results
            output_path: Output file path
        """
        with open(output_path, "w", encoding="utf-8") as f:
            for result in results:
                f.write(json.dumps(result.model_dump(mode="json"), ensure_ascii=False) + "\n")

        logger.info("wrote_jsonl", path=str(output_path), results=len(results))

    @staticmethod
    def write_parquet(results: list[CrawlResult], output_path: Path):
        """
        Write results to a Parquet file, one flat row per page.

        Requires pyarrow (pip install 'driftnet[parquet]').

        Args:
            results: Crawl results
            output_path: Output file path
        """
        try:
            import pyarrow as pa
            import pyarrow.parquet as pq
        except ImportError:
            raise ImportError(
                "Parquet support requires pyarrow. Install with: pip install 'driftnet[parquet]'"
            )

        rows = []
        for result in results:
            content = result.scraped_content
            rows.append(
                {
                    "url": result.url,
                    "status_code": result.status_code,
                    "content_type": result.content_type,
                    "depth": result.request.depth if result.request else None,
                    "title": content.title if content else None,
                    "text": content.text if content else None,
                    "num_links": len(content.links) if content else 0,
                    # Nested fields are stored as JSON strings
                    "metadata": json.dumps(content.metadata if content else {}),
                    "payload": json.dumps(result.payload, default=str),
                    "crawled_at": result.crawled_at.isoformat(),
                }
            )

        pq.write_table(pa.Table.from_pylist(rows), output_path, compression="snappy")
        logger.info("wrote_parquet", path=str(output_path), results=len(rows))

    @staticmethod
    def write_text(results: list[CrawlResult], output_path: Path):
        """Write extracted titles and text to a plain text file."""
        with open(output_path, "w", encoding="utf-8") as f:
            for result in results:
                content = result.scraped_content
                f.write(f"URL: {result.url}\n")
                f.write(f"Title: {(content.title if content else None) or 'N/A'}\n")
                f.write("-" * 80 + "\n")
                if content and content.text:
                    f.write(content.text)
                    f.write("\n\n")
                f.write("=" * 80 + "\n\n")

        logger.info("wrote_text", path=str(output_path), results=len(results))

    @classmethod
    def write(cls, results: Iterable[CrawlResult], output_path: Path, format: str):
        results = list(results)
        if format == "json":
            cls.write_json(results, output_path)
        elif format == "jsonl":
            cls.write_jsonl(results, output_path)
        elif format == "parquet":
            cls.write_parquet(results, output_path)
        elif format == "text":
            cls.write_text(results, output_path)
        else:
            raise ValueError(f"Unsupported output format: {format}")


def read_results(file_path: Path) -> list[CrawlResult]:
    """
    Load results written by ``Writer``.

    Args:
        file_path: Path to a .json or .jsonl file

    Returns:
        Parsed results
    """
    suffix = file_path.suffix.lower()

    if suffix == ".jsonl":
        with open(file_path, "r", encoding="utf-8") as f:
            results = [CrawlResult(**json.loads(line)) for line in f if line.strip()]
    elif suffix == ".json":
        with open(file_path, "r", encoding="utf-8") as f:
            results = [CrawlResult(**item) for item in json.load(f)]
    else:
        raise ValueError(f"Unsupported file format: {suffix}")

    logger.debug("loaded_results", path=str(file_path), count=len(results))
    return results
