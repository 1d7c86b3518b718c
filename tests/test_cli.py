"""
End-to-end CLI tests with click's CliRunner.

The registry is replaced by FakeRegistry; everything else (manifest,
lockfile, SQLite cache database, file layout) is real and lives under
pytest's tmp_path.
"""

import json
import os
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from bdp.cli import cli
from bdp.infra.registry_client import RegistryClient

from fakes import FakeRegistry

INSULIN = b">sp|P01308|INS_HUMAN Insulin\n" + b"MALWMRLLPLLALLALWGPDPAAA\n" * 12
INSULIN_V2 = b">sp|P01308|INS_HUMAN Insulin v2\n" + b"MALWMRLLPLLALLALWGPDPAAA\n" * 13
PIG = b">sp|P01315|INS_PIG Insulin\n" + b"MALWTRLLPLLALLALWAPAPAQA\n" * 9
BLAST = b"\x7fELF" + b"\x00" * 60


@pytest.fixture
def env(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith('BDP_'):
            monkeypatch.delenv(key)
    monkeypatch.setenv('BDP_CONFIG', str(tmp_path / "config.json"))
    monkeypatch.setenv('BDP_PROGRESS', '0')
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def registry():
    registry = FakeRegistry()
    registry.add_file("uniprot:P01308-fasta@1.0", INSULIN)
    registry.add_file("uniprot:P01308-fasta@2.0", INSULIN_V2)
    registry.add_file("uniprot:P01315-fasta@1.0", PIG)
    registry.add_file("ncbi:blast@2.14.0", BLAST, kind="tool")
    registry.add_aggregate("uniprot:insulins-fasta@1.0", [
        "uniprot:P01308-fasta@1.0", "uniprot:P01315-fasta@1.0",
    ])
    return registry


def run(project, *args):
    """Invoke bdp with ``-C project`` appended; returns (result, JSON records)."""
    runner = CliRunner()
    result = runner.invoke(cli, list(args) + ['-C', str(project)])
    records = [json.loads(line) for line in result.stdout.splitlines() if line.startswith('{')]
    return result, records


def init_project(project, *specs, tools=()):
    result, _ = run(project, 'init', '--name', 'insulin-study')
    assert result.exit_code == 0, result.output
    for spec in specs:
        result, _ = run(project, 'source', 'add', spec)
        assert result.exit_code == 0, result.output
    for spec in tools:
        result, _ = run(project, 'source', 'add', spec, '--tool')
        assert result.exit_code == 0, result.output


class TestInitAndSources:

    def test_init_creates_manifest_and_gitignore(self, env):
        result, records = run(env, 'init', '--name', 'insulin-study')
        assert result.exit_code == 0
        assert records == [{
            'type': 'init',
            'manifest': str(env / "bdp.yml"),
            'name': 'insulin-study',
            'version': '0.1.0',
        }]
        assert (env / "bdp.yml").exists()
        assert ".bdp/cache/" in (env / ".gitignore").read_text()

    def test_second_init_refuses(self, env):
        run(env, 'init')
        result, records = run(env, 'init')
        assert result.exit_code == 65
        assert records[0]['type'] == 'ManifestError'
        assert "already exists" in records[0]['error']

    def test_add_list_remove(self, env):
        init_project(env, "uniprot:P01308-fasta@1.0")

        result, records = run(env, 'source', 'add', 'uniprot:P01308-fasta@1.0')
        assert result.exit_code == 0
        assert records[0]['action'] == 'unchanged'

        result, records = run(env, 'source', 'list')
        assert result.exit_code == 0
        assert records == [{
            'type': 'source', 'section': 'sources', 'spec': 'uniprot:P01308-fasta@1.0', 'locked': False,
        }]

        result, records = run(env, 'source', 'remove', 'uniprot:P01308-fasta@1.0')
        assert result.exit_code == 0
        assert records[0]['action'] == 'removed'

    def test_add_rejects_malformed_spec(self, env):
        init_project(env)
        result, records = run(env, 'source', 'add', 'uniprot:P01308-FASTA@1.0')
        assert result.exit_code == 65
        assert records[0]['type'] == 'ParseError'
        assert "P01308" not in (env / "bdp.yml").read_text()

    def test_remove_unlisted_is_usage_error(self, env):
        init_project(env)
        result, _ = run(env, 'source', 'remove', 'uniprot:P01308@1.0')
        assert result.exit_code == 2

    def test_commands_need_a_manifest(self, env):
        result, records = run(env, 'source', 'list')
        assert result.exit_code == 65
        assert "bdp init" in records[0]['error']


class TestConfigCommands:

    def test_set_then_get(self, env, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ['config', 'set', 'download.concurrency', '8'])
        assert result.exit_code == 0, result.output
        assert json.loads((tmp_path / "config.json").read_text()) == {'download': {'concurrency': 8}}

        result = runner.invoke(cli, ['config', 'get', 'download.concurrency'])
        assert result.exit_code == 0
        assert json.loads(result.stdout.splitlines()[0]) == {'key': 'download.concurrency', 'value': 8}

    def test_unknown_key_is_config_error(self, env):
        result = CliRunner().invoke(cli, ['config', 'get', 'download.speed'])
        assert result.exit_code == 66

    def test_badly_typed_value(self, env):
        result = CliRunner().invoke(cli, ['config', 'set', 'cache.auto_evict', 'maybe'])
        assert result.exit_code == 66


class TestCacheCommands:

    def test_stats_on_empty_project(self, env):
        init_project(env)
        result, records = run(env, 'cache', 'stats')
        assert result.exit_code == 0
        assert records[0]['type'] == 'cache_stats'
        assert records[0]['entries'] == 0
        assert records[0]['total_bytes'] == 0

    def test_clean_needs_exactly_one_mode(self, env):
        init_project(env)
        result, _ = run(env, 'cache', 'clean', '--all', '--unreferenced')
        assert result.exit_code == 2
        result, _ = run(env, 'cache', 'clean')
        assert result.exit_code == 2

    def test_clean_rejects_bad_duration(self, env):
        init_project(env)
        result, _ = run(env, 'cache', 'clean', '--older-than', 'a while')
        assert result.exit_code == 2


class TestPullAndVerify:

    def cached(self, project, name, fmt="fasta"):
        return project / ".bdp" / "cache" / "sources" / "uniprot" / f"{name}@1.0" / f"{name}.{fmt}"

    def test_pull_then_verify(self, env, registry):
        init_project(env, "uniprot:insulins-fasta@1.0", tools=["ncbi:blast@2.14.0"])
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            result, records = run(env, 'pull')
            assert result.exit_code == 0, result.output
            assert records[0]['type'] == 'resolution'
            assert records[0]['files'] == 3
            download = records[-1]
            assert download['operation'] == 'download'
            assert download['successful'] == 3
            assert download['failed'] == 0

            assert self.cached(env, "P01308").read_bytes() == INSULIN
            blast = env / ".bdp" / "cache" / "tools" / "ncbi" / "blast@2.14.0" / "blast.bin"
            assert blast.read_bytes() == BLAST
            assert (env / "bdl.lock").exists()
            assert (env / ".bdp" / "resolved-dependencies.json").exists()

            result, records = run(env, 'verify')
            assert result.exit_code == 0, result.output
            assert records[-1]['operation'] == 'verify'
            assert records[-1]['verified'] == 3

    def test_second_pull_downloads_nothing(self, env, registry):
        init_project(env, "uniprot:P01308-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            run(env, 'pull')
            lock_before = (env / "bdl.lock").read_bytes()
            result, records = run(env, 'pull')
        assert result.exit_code == 0
        assert records[-1]['skipped'] == 1
        assert records[-1]['successful'] == 0
        assert len(registry.download_calls) == 1
        assert (env / "bdl.lock").read_bytes() == lock_before

    def test_force_pull_downloads_again(self, env, registry):
        init_project(env, "uniprot:P01308-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            run(env, 'pull')
            result, records = run(env, 'pull', '--force')
        assert result.exit_code == 0
        assert records[-1]['successful'] == 1
        assert len(registry.download_calls) == 2

    def test_list_shows_pins_after_pull(self, env, registry):
        init_project(env, "uniprot:P01308-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            run(env, 'pull', '--lock-only')
        assert registry.download_calls == []
        result, records = run(env, 'source', 'list')
        assert result.exit_code == 0
        assert records[0]['locked'] is True

    def test_verify_detects_and_repairs(self, env, registry):
        init_project(env, "uniprot:insulins-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            run(env, 'pull')
            self.cached(env, "P01308").write_bytes(b"X" * len(INSULIN))

            result, records = run(env, 'verify')
            assert result.exit_code == 73
            assert records[0]['status'] == 'corrupted'
            assert records[0]['spec'] == 'uniprot:P01308-fasta@1.0'

            result, _ = run(env, 'verify', '--repair')
            assert result.exit_code == 0, result.output
            assert self.cached(env, "P01308").read_bytes() == INSULIN

            result, _ = run(env, 'verify')
            assert result.exit_code == 0

    def test_version_conflict_stops_before_download(self, env, registry):
        init_project(env, "uniprot:insulins-fasta@1.0", "uniprot:P01308-fasta@2.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            result, records = run(env, 'pull')
        assert result.exit_code == 72
        assert records[0]['type'] == 'ConflictError'
        assert registry.download_calls == []
        assert not (env / "bdl.lock").exists()

    def test_unknown_source_is_registry_error(self, env, registry):
        init_project(env, "uniprot:P99999-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            result, records = run(env, 'pull')
        assert result.exit_code == 69
        assert records[0]['kind'] == 'not_found'

    def test_failed_file_exits_transient(self, env, registry):
        init_project(env, "uniprot:insulins-fasta@1.0")
        registry.corrupt_times["uniprot:P01308-fasta@1.0"] = 10
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            result, records = run(env, 'pull')
        assert result.exit_code == 75
        summary = [r for r in records if r.get('operation') == 'download'][0]
        assert summary['successful'] == 1
        assert summary['failed'] == 1
        assert records[-1]['type'] == 'PartialSuccessError'
        assert self.cached(env, "P01315").read_bytes() == PIG
        assert not self.cached(env, "P01308").exists()

    def test_verify_without_tree_cache_fails(self, env, registry):
        init_project(env, "uniprot:insulins-fasta@1.0")
        with patch.object(RegistryClient, 'from_config', return_value=registry):
            run(env, 'pull')
        (env / ".bdp" / "resolved-dependencies.json").unlink()

        result, records = run(env, 'verify')
        assert result.exit_code == 73
        assert records[0] == {
            'spec': 'uniprot:insulins-fasta@1.0',
            'path': 'resolved-dependencies.json',
            'status': 'missing',
            'expected': registry.items[("source", "uniprot:insulins-fasta@1.0")]['checksum'],
        }
