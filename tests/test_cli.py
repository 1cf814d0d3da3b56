"""Tests for the command-line interface."""

import json
from aioresponses import aioresponses
from click.testing import CliRunner

from driftnet import __version__
from driftnet.cli import default_queue_id, main
from driftnet.models import CrawlResult, ScrapedContent
from driftnet.writers import Writer


def test_version_command():
    result = CliRunner().invoke(main, ["version"])

    assert result.exit_code == 0
    assert f"driftnet version {__version__}" in result.output


def test_default_queue_id_is_order_independent():
    first = default_queue_id(("https://a.com", "https://b.com"))
    second = default_queue_id(("https://b.com", "https://a.com"))

    assert first == second
    assert first.startswith("crawl-")


def test_state_missing(tmp_path):
    result = CliRunner().invoke(main, ["state", "nope", "--state-dir", str(tmp_path)])

    assert result.exit_code == 1


def test_state_shows_snapshot(tmp_path):
    snapshot = {
        "state": {"queue_id": "q1", "phase": "finished", "completed_requests": 3, "timestamp": 1},
        "queue": {"total": 3, "completed": 3},
    }
    (tmp_path / "q1.state.json").write_text(json.dumps(snapshot))

    result = CliRunner().invoke(main, ["state", "q1", "--state-dir", str(tmp_path)])

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["state"]["phase"] == "finished"
    assert data["queue"]["completed"] == 3


def test_stats_command(tmp_path):
    path = tmp_path / "out.jsonl"
    Writer.write(
        [CrawlResult(url="https://example.com/", scraped_content=ScrapedContent(title="Home"))],
        path,
        "jsonl",
    )

    text = CliRunner().invoke(main, ["stats", str(path)])
    as_json = CliRunner().invoke(main, ["stats", str(path), "--json"])

    assert text.exit_code == 0
    assert "Total Pages: 1" in text.output
    assert json.loads(as_json.output)["total_pages"] == 1


def test_crawl_rejects_bad_bounds():
    result = CliRunner().invoke(
        main, ["crawl", "https://example.com", "--min-concurrency", "5", "--max-concurrency", "2"]
    )

    assert result.exit_code != 0


class RecordingBar:
    """Stand-in for the tqdm progress bar."""

    def __init__(self, *args, **kwargs):
        self.updates = 0
        self.postfixes = []
        RecordingBar.last = self

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def update(self, n=1):
        self.updates += n

    def set_postfix(self, values):
        self.postfixes.append(values)


def test_crawl_with_sitemaps_reports_progress(tmp_path, monkeypatch):
    monkeypatch.setattr("driftnet.cli.tqdm", RecordingBar)
    sitemap = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<url><loc>https://example.com/about</loc></url>"
        "</urlset>"
    )
    output = tmp_path / "out.jsonl"

    with aioresponses() as m:
        m.get("https://example.com/robots.txt", status=404)
        m.get("https://example.com/sitemap.xml", status=200, body=sitemap, content_type="application/xml")
        m.get("https://example.com/", status=200, body="<html><title>Home</title></html>", content_type="text/html")
        m.get("https://example.com/about", status=200, body="<html><title>About</title></html>", content_type="text/html")

        result = CliRunner().invoke(
            main,
            ["crawl", "https://example.com/", "--no-robots", "--sitemaps", "-o", str(output)],
        )

    assert result.exit_code == 0, result.output
    assert "Wrote 2 pages" in result.output
    assert RecordingBar.last.updates == 2
    assert [p["depth"] for p in RecordingBar.last.postfixes] == [0, 0]
