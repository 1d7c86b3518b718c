"""
Tests for bdp.domain: source specs, resolved entries and the dependency graph.
"""

import unittest

import pytest

from bdp.checksum import compute_checksum
from bdp.domain.entry import DependencyRef, ResolvedEntry, DEFAULT_FORMAT, SOURCE, TOOL
from bdp.domain.graph import DependencyGraph, MANIFEST_PARENT
from bdp.domain.spec import SourceSpec, is_valid_spec, parse_spec
from bdp.errors import ConflictError, ParseError


def _entry(spec: str, payload: bytes = b"x", aggregate: bool = False, kind: str = SOURCE) -> ResolvedEntry:
    parsed = parse_spec(spec)
    return ResolvedEntry(
        spec=parsed,
        resolved_identity=parsed.identity,
        checksum=compute_checksum(payload),
        size_bytes=len(payload),
        has_dependencies=aggregate,
        kind=kind,
    )


class TestSourceSpec(unittest.TestCase):
    """Tests for parse_spec."""

    def test_parse_with_format(self):
        spec = parse_spec("uniprot:P01308-fasta@1.0")
        self.assertEqual(spec.organization, "uniprot")
        self.assertEqual(spec.name, "P01308")
        self.assertEqual(spec.format, "fasta")
        self.assertEqual(spec.version, "1.0")
        self.assertTrue(spec.is_pinned)

    def test_parse_without_format(self):
        spec = parse_spec("ncbi:blast@2.14.0")
        self.assertEqual(spec.name, "blast")
        self.assertIsNone(spec.format)
        self.assertFalse(spec.is_pinned)

    def test_format_is_last_dash_segment(self):
        spec = parse_spec("ensembl:homo-sapiens-gtf@112")
        self.assertEqual(spec.name, "homo-sapiens")
        self.assertEqual(spec.format, "gtf")

    def test_str_round_trips(self):
        for text in ("uniprot:P01308-fasta@1.0", "ncbi:blast@2.14.0", "uniprot:all-fasta@1.0"):
            self.assertEqual(str(parse_spec(text)), text)

    def test_surrounding_whitespace_is_ignored(self):
        self.assertEqual(parse_spec("  uniprot:P01308-fasta@1.0 ").identity, "uniprot:P01308-fasta@1.0")

    def test_specs_compare_structurally(self):
        self.assertEqual(parse_spec("a:b@1"), SourceSpec("a", "b", "1"))
        self.assertEqual(len({parse_spec("a:b@1"), parse_spec("a:b@1")}), 1)

    def test_package_key_ignores_version_and_format(self):
        self.assertEqual(parse_spec("uniprot:P01308-fasta@1.0").package_key, ("uniprot", "P01308"))
        self.assertEqual(parse_spec("uniprot:P01308@2.0").package_key, ("uniprot", "P01308"))

    def test_missing_version(self):
        with self.assertRaises(ParseError) as ctx:
            parse_spec("uniprot:P01308-fasta")
        self.assertEqual(ctx.exception.text, "uniprot:P01308-fasta")

    def test_missing_organization(self):
        with self.assertRaises(ParseError):
            parse_spec(":P01308@1.0")

    def test_two_colons(self):
        with self.assertRaises(ParseError):
            parse_spec("a:b:c@1.0")

    def test_empty_version(self):
        with self.assertRaises(ParseError) as ctx:
            parse_spec("uniprot:P01308@")
        self.assertEqual(ctx.exception.offending, "@")

    def test_uppercase_format_names_offending_part(self):
        with self.assertRaises(ParseError) as ctx:
            parse_spec("uniprot:P01308-FASTA@1.0")
        self.assertEqual(ctx.exception.offending, "FASTA")

    def test_empty_name_and_empty_format(self):
        with self.assertRaises(ParseError):
            parse_spec("uniprot:-fasta@1.0")
        with self.assertRaises(ParseError):
            parse_spec("uniprot:P01308-@1.0")

    def test_empty_string(self):
        with self.assertRaises(ParseError):
            parse_spec("")

    def test_parse_error_exit_code(self):
        with self.assertRaises(ParseError) as ctx:
            parse_spec("nonsense")
        self.assertEqual(ctx.exception.exit_code, 65)

    def test_is_valid_spec(self):
        self.assertTrue(is_valid_spec("a:b@1"))
        self.assertFalse(is_valid_spec("a:b"))


class TestResolvedEntry:
    """Tests for ResolvedEntry and DependencyRef."""

    def test_from_registry_normalizes_checksum(self):
        digest = "ab" * 32
        entry = ResolvedEntry.from_registry(
            parse_spec("uniprot:P01308-fasta@1.0"),
            {'checksum': digest, 'size': 12, 'external_version': '2025_01'},
        )
        assert entry.checksum == "sha256-" + digest
        assert entry.size_bytes == 12
        assert entry.resolved_identity == "uniprot:P01308-fasta@1.0"
        assert entry.file_format == "fasta"
        assert not entry.is_aggregate

    def test_default_format_when_unpinned(self):
        entry = _entry("ncbi:blast@2.14.0", kind=TOOL)
        assert entry.file_format == DEFAULT_FORMAT

    def test_registry_format_used_when_spec_has_none(self):
        entry = ResolvedEntry.from_registry(
            parse_spec("ncbi:blast@2.14.0"),
            {'checksum': "sha256-" + "0" * 64, 'size_bytes': 1, 'format': 'tar.gz'},
            kind=TOOL,
        )
        assert entry.file_format == "tar.gz"

    def test_reported_tree_checksum_kept_separately(self):
        entry = ResolvedEntry.from_registry(
            parse_spec("uniprot:all-fasta@1.0"),
            {'checksum': "sha256-" + "1" * 64, 'size_bytes': 0, 'has_dependencies': True,
             'dependency_count': 3, 'tree_checksum': "2" * 64},
        )
        assert entry.is_aggregate
        assert entry.reported_tree_checksum == "sha256-" + "2" * 64
        assert entry.tree_checksum is None

    def test_leaf_ref_stays_compact(self):
        ref = _entry("uniprot:P01308-fasta@1.0").to_ref()
        assert set(ref.to_dict()) == {'source', 'checksum', 'size'}

    def test_aggregate_ref_carries_count(self):
        ref = DependencyRef.from_dict({
            'source': 'uniprot:all-fasta@1.0', 'checksum': "3" * 64, 'size': 0,
            'has_dependencies': True, 'dependency_count': 7,
        })
        assert ref.to_dict()['dependency_count'] == 7
        assert ResolvedEntry.from_ref(ref).is_aggregate


class TestDependencyGraph(unittest.TestCase):
    """Tests for the arena graph."""

    def test_add_node_deduplicates_by_identity(self):
        graph = DependencyGraph()
        first, created = graph.add_node(_entry("a:x@1"))
        second, created_again = graph.add_node(_entry("a:x@1"))
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first, second)
        self.assertEqual(len(graph), 1)

    def test_revisit_as_direct_marks_root(self):
        graph = DependencyGraph()
        graph.add_node(_entry("a:x@1"))
        graph.add_node(_entry("a:x@1"), direct=True)
        self.assertEqual([n.identity for n in graph.roots], ["a:x@1"])

    def test_duplicate_edges_are_ignored(self):
        graph = DependencyGraph()
        parent, _ = graph.add_node(_entry("a:agg@1", aggregate=True), direct=True)
        child, _ = graph.add_node(_entry("a:x@1"))
        graph.add_edge(parent, child)
        graph.add_edge(parent, child)
        self.assertEqual(graph.edges, [(parent, child)])

    def test_leaves_under_flattens_nested_aggregates(self):
        graph = DependencyGraph()
        root, _ = graph.add_node(_entry("a:top@1", aggregate=True), direct=True)
        inner, _ = graph.add_node(_entry("a:inner@1", aggregate=True))
        z, _ = graph.add_node(_entry("a:z@1"))
        b, _ = graph.add_node(_entry("a:b@1"))
        graph.add_edge(root, inner)
        graph.add_edge(root, z)
        graph.add_edge(inner, b)
        graph.add_edge(inner, z)

        leaves = [e.resolved_identity for e in graph.leaves_under(root)]
        self.assertEqual(leaves, ["a:b@1", "a:z@1"])

    def test_conflict_names_versions_and_parents(self):
        graph = DependencyGraph()
        direct, _ = graph.add_node(_entry("uniprot:P01308-fasta@1.0"), direct=True)
        agg, _ = graph.add_node(_entry("uniprot:all-fasta@2.0", aggregate=True), direct=True)
        other, _ = graph.add_node(_entry("uniprot:P01308-fasta@2.0"))
        graph.add_edge(agg, other)

        conflicts = graph.find_conflicts()
        self.assertEqual(len(conflicts), 1)
        conflict = conflicts[0]
        self.assertEqual((conflict.organization, conflict.name), ("uniprot", "P01308"))
        self.assertEqual(conflict.requests["1.0"], [MANIFEST_PARENT])
        self.assertEqual(conflict.requests["2.0"], ["uniprot:all-fasta@2.0"])

        with self.assertRaises(ConflictError) as ctx:
            graph.check_conflicts()
        self.assertEqual(ctx.exception.exit_code, 72)
        self.assertIn("1.0 (requested by manifest)", str(ctx.exception))

    def test_same_name_in_sources_and_tools_is_not_a_conflict(self):
        graph = DependencyGraph()
        graph.add_node(_entry("ncbi:blast@2.14.0", kind=TOOL), direct=True)
        graph.add_node(_entry("ncbi:blast@2.13.0", kind=SOURCE), direct=True)
        self.assertEqual(graph.find_conflicts(), [])

    def test_replace_entry_keeps_identity(self):
        graph = DependencyGraph()
        index, _ = graph.add_node(_entry("a:x@1"))
        with self.assertRaises(ValueError):
            graph.replace_entry(index, _entry("a:y@1"))


class TestConflictErrorPayload:
    def test_to_dict_lists_versions(self):
        graph = DependencyGraph()
        graph.add_node(_entry("a:x@1"), direct=True)
        graph.add_node(_entry("a:x@2"), direct=True)
        with pytest.raises(ConflictError) as exc_info:
            graph.check_conflicts()
        payload = exc_info.value.to_dict()
        assert payload['conflicts'][0]['versions'] == {'1': ['manifest'], '2': ['manifest']}
