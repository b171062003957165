"""End-to-end tests for CLI commands.

The embedding provider is replaced with the deterministic fake so the
commands run without downloading a model.
"""

import sys

import orjson
import pytest
from loguru import logger
from typer.testing import CliRunner

from hybrid_code_search import __version__
from hybrid_code_search.cli import main as cli_main
from hybrid_code_search.cli.main import app, read_chunk_records


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    # The CLI callback replaces loguru sinks with the runner's stderr
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture(autouse=True)
def fake_provider(monkeypatch, provider):
    monkeypatch.setattr(
        cli_main, "create_embedding_provider", lambda settings=None: provider
    )
    return provider


@pytest.fixture
def workspace(tmp_path):
    return tmp_path


@pytest.fixture
def base_args(workspace):
    return [
        "--index-path",
        str(workspace / "index.snapshot"),
        "--config",
        str(workspace / "config.yaml"),
    ]


@pytest.fixture
def chunks_file(workspace, sample_records):
    path = workspace / "chunks.json"
    path.write_bytes(orjson.dumps(sample_records))
    return path


@pytest.fixture
def indexed(cli_runner, base_args, chunks_file):
    result = cli_runner.invoke(app, [*base_args, "index", str(chunks_file)])
    assert result.exit_code == 0, result.output
    return result


class TestVersion:
    def test_version_flag(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestIndexCommand:
    def test_index_creates_snapshot(self, indexed, workspace):
        assert (workspace / "index.snapshot").exists()
        assert "Indexing Summary" in indexed.output

    def test_index_json_summary(self, cli_runner, base_args, chunks_file):
        result = cli_runner.invoke(
            app, [*base_args, "index", str(chunks_file), "--json"]
        )
        assert result.exit_code == 0, result.output
        assert '"added": 5' in result.output

    def test_reindex_is_unchanged(self, indexed, cli_runner, base_args, chunks_file):
        result = cli_runner.invoke(
            app, [*base_args, "index", str(chunks_file), "--json"]
        )
        assert result.exit_code == 0, result.output
        assert '"unchanged": 5' in result.output
        assert '"added": 0' in result.output

    def test_reindex_without_timestamps_is_unchanged(
        self, cli_runner, base_args, workspace, sample_records
    ):
        records = [
            {k: v for k, v in r.items() if k not in ("createdAt", "updatedAt")}
            for r in sample_records
        ]
        path = workspace / "chunks.json"
        path.write_bytes(orjson.dumps(records))

        first = cli_runner.invoke(app, [*base_args, "index", str(path), "--json"])
        second = cli_runner.invoke(app, [*base_args, "index", str(path), "--json"])

        assert first.exit_code == 0, first.output
        assert second.exit_code == 0, second.output
        assert '"unchanged": 5' in second.output
        assert '"metadata_updated": 0' in second.output

    def test_reconcile_removes_missing_chunks(
        self, indexed, cli_runner, base_args, workspace, sample_records
    ):
        subset = workspace / "subset.json"
        subset.write_bytes(orjson.dumps({"chunks": sample_records[:3]}))

        result = cli_runner.invoke(
            app, [*base_args, "index", str(subset), "--reconcile", "--json"]
        )

        assert result.exit_code == 0, result.output
        assert '"removed": 2' in result.output

    def test_jsonl_input(self, cli_runner, base_args, workspace, sample_records):
        path = workspace / "chunks.jsonl"
        path.write_bytes(b"\n".join(orjson.dumps(r) for r in sample_records) + b"\n")

        result = cli_runner.invoke(app, [*base_args, "index", str(path), "--json"])

        assert result.exit_code == 0, result.output
        assert '"added": 5' in result.output

    def test_invalid_records_are_reported_not_fatal(
        self, cli_runner, base_args, workspace, sample_records
    ):
        bad = dict(sample_records[0], id="broken", startLine=9, endLine=1)
        path = workspace / "chunks.json"
        path.write_bytes(orjson.dumps([bad, *sample_records[1:]]))

        result = cli_runner.invoke(app, [*base_args, "index", str(path), "--json"])

        assert result.exit_code == 0, result.output
        assert '"added": 4' in result.output
        assert "InvalidChunk" in result.output

    def test_non_list_file_fails(self, cli_runner, base_args, workspace):
        path = workspace / "chunks.json"
        path.write_text('"just a string"')
        result = cli_runner.invoke(app, [*base_args, "index", str(path)])
        assert result.exit_code == 1


class TestSearchCommand:
    def test_search_finds_identifier(self, indexed, cli_runner, base_args):
        result = cli_runner.invoke(app, [*base_args, "search", "validateToken"])
        assert result.exit_code == 0, result.output
        assert "validateToken" in result.output

    def test_search_json(self, indexed, cli_runner, base_args):
        result = cli_runner.invoke(
            app, [*base_args, "search", "hash password bcrypt", "--json"]
        )
        assert result.exit_code == 0, result.output
        assert '"chunk-2"' in result.output
        assert '"degraded": false' in result.output

    def test_search_language_filter(self, indexed, cli_runner, base_args):
        result = cli_runner.invoke(
            app,
            [*base_args, "search", "logging", "--language", "python", "--json"],
        )
        assert result.exit_code == 0, result.output
        assert '"chunk-5"' in result.output
        assert '"typescript"' not in result.output

    def test_search_degrades_when_provider_fails(
        self, indexed, cli_runner, base_args, fake_provider
    ):
        fake_provider.fail = True
        result = cli_runner.invoke(
            app, [*base_args, "search", "validateToken", "--json"]
        )
        assert result.exit_code == 0, result.output
        assert '"degraded": true' in result.output
        assert '"chunk-1"' in result.output

    def test_search_empty_index(self, cli_runner, base_args):
        result = cli_runner.invoke(app, [*base_args, "search", "anything"])
        assert result.exit_code == 1
        assert "Index is empty" in result.output


class TestStatusCommand:
    def test_status_json(self, indexed, cli_runner, base_args):
        result = cli_runner.invoke(app, [*base_args, "status", "--json"])
        assert result.exit_code == 0, result.output
        assert '"total_chunks": 5' in result.output
        assert '"total_files": 4' in result.output
        assert '"embedding_model": "fake-bag-of-words"' in result.output

    def test_status_without_index(self, cli_runner, base_args):
        result = cli_runner.invoke(app, [*base_args, "status"])
        assert result.exit_code == 0, result.output
        assert "Index Status" in result.output


class TestClearCommand:
    def test_clear_deletes_snapshot(self, indexed, cli_runner, base_args, workspace):
        result = cli_runner.invoke(app, [*base_args, "clear", "--yes"])
        assert result.exit_code == 0, result.output
        assert not (workspace / "index.snapshot").exists()

    def test_clear_aborts_without_confirmation(
        self, indexed, cli_runner, base_args, workspace
    ):
        result = cli_runner.invoke(app, [*base_args, "clear"], input="n\n")
        assert result.exit_code == 0
        assert (workspace / "index.snapshot").exists()

    def test_clear_without_index(self, cli_runner, base_args):
        result = cli_runner.invoke(app, [*base_args, "clear", "--yes"])
        assert result.exit_code == 0
        assert "No index" in result.output


class TestReadChunkRecords:
    def test_array(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('[{"id": "a"}]')
        assert read_chunk_records(path) == [{"id": "a"}]

    def test_wrapped_object(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"chunks": [{"id": "a"}, {"id": "b"}]}')
        assert [r["id"] for r in read_chunk_records(path)] == ["a", "b"]

    def test_single_object(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"id": "a"}')
        assert read_chunk_records(path) == [{"id": "a"}]

    def test_json_lines(self, tmp_path):
        path = tmp_path / "a.jsonl"
        path.write_text('{"id": "a"}\n\n{"id": "b"}\n')
        assert [r["id"] for r in read_chunk_records(path)] == ["a", "b"]
