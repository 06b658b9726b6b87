"""Tests for the bulk ingest script."""
import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "ingest.py"


@pytest.fixture(scope="module")
def ingest_script():
    spec = importlib.util.spec_from_file_location("ingest_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.asyncio
async def test_ingest_files_continues_past_failures(ingest_script, state, tmp_path, capsys):
    good = tmp_path / "good.txt"
    good.write_text("First paragraph.\n\nSecond paragraph.", encoding="utf-8")
    missing = tmp_path / "missing.txt"

    stats = await ingest_script.ingest_files(
        state, [good, missing], ingest_script.ProgressReporter()
    )

    assert stats == {"files_processed": 1, "files_failed": 1, "chunks_created": 2}
    output = capsys.readouterr().out
    assert "2 chunks" in output
    assert "FAILED" in output
    assert "document_id=" not in output


@pytest.mark.asyncio
async def test_verbose_prints_details(ingest_script, state, tmp_path, capsys):
    good = tmp_path / "good.txt"
    good.write_text("Only paragraph.", encoding="utf-8")
    missing = tmp_path / "missing.txt"

    await ingest_script.ingest_files(
        state, [good, missing], ingest_script.ProgressReporter(verbose=True)
    )

    output = capsys.readouterr().out
    document_id = state.list_documents()[0]["id"]
    assert f"document_id={document_id}" in output
    assert "error_type=DocumentNotFoundError" in output
