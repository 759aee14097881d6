"""Command line entry points."""

import pytest

import load_table
from be.config import settings
from be.pipelines.staging import LoadProgress

from .test_tables import METRICS_HEADER, metrics_row


@pytest.mark.asyncio
async def test_unknown_table_prints_usage(capsys):
    assert await load_table.main(["nope"]) == 1

    out = capsys.readouterr().out
    assert "Unknown table: nope" in out
    assert "metrics" in out


@pytest.mark.asyncio
async def test_run_loads_table_and_prints_summary(session_maker, staging_file, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(settings.etl, "data_dir", str(tmp_path))
    monkeypatch.setattr(settings.etl, "count_rows", True)
    staging_file(
        "full_contractor_metrics_monthly/part_0.csv.gz",
        METRICS_HEADER,
        [metrics_row("U1", "2024-01-01", "1.5")],
    )

    assert await load_table.run(["metrics"], session_maker) == 0

    out = capsys.readouterr().out
    assert "1/1 rows (100.0%)" in out
    assert "Inserted: 1" in out


@pytest.mark.asyncio
async def test_fatal_error_exits_nonzero(session_maker, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(settings.etl, "data_dir", str(tmp_path))

    assert await load_table.run(["peer"], session_maker) == 1
    assert "❌" in capsys.readouterr().out


def test_summary_lists_first_errors(capsys):
    progress = LoadProgress(total_processed=10, total_failed=7)
    for i in range(7):
        progress.record_error(f"Batch {i + 1}: boom")

    load_table.print_summary("Contractor Universe", progress, 1.0)

    out = capsys.readouterr().out
    assert "Batch 5: boom" in out
    assert "Batch 6: boom" not in out
    assert "... and 2 more" in out
