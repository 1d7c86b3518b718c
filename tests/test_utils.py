"""
Tests for the small shared helpers: checksums, retry policy and output
formatting.
"""

import hashlib
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import pytest

from bdp.checksum import (
    compute_checksum,
    compute_file_checksum,
    normalize_checksum,
    tree_checksum,
    verify_file_checksum,
)
from bdp.errors import ChecksumMismatchError, RegistryError, RegistryErrorKind
from bdp.format_utils import (
    format_output,
    format_size,
    get_format_from_env,
    parse_duration,
    parse_size,
)
from bdp.retry import RetryPolicy


class TestChecksum(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_compute_checksum_format(self):
        expected = "sha256-" + hashlib.sha256(b"hello").hexdigest()
        self.assertEqual(compute_checksum(b"hello"), expected)

    def test_normalize_accepts_all_spellings(self):
        digest = "AB" * 32
        expected = "sha256-" + "ab" * 32
        self.assertEqual(normalize_checksum(digest), expected)
        self.assertEqual(normalize_checksum("sha256:" + digest), expected)
        self.assertEqual(normalize_checksum("SHA256-" + digest), expected)
        self.assertEqual(normalize_checksum(expected), expected)

    def test_file_checksum_matches_bytes_checksum(self):
        path = Path(self.temp_dir) / "data.bin"
        data = os.urandom(5000)
        path.write_bytes(data)
        self.assertEqual(compute_file_checksum(path, chunk_size=512), compute_checksum(data))

    def test_verify_file_checksum_raises_on_mismatch(self):
        path = Path(self.temp_dir) / "data.bin"
        path.write_bytes(b"actual")
        verify_file_checksum(path, compute_checksum(b"actual"))
        with self.assertRaises(ChecksumMismatchError) as ctx:
            verify_file_checksum(path, compute_checksum(b"expected"))
        self.assertEqual(ctx.exception.actual, compute_checksum(b"actual"))

    def test_tree_checksum_is_order_sensitive(self):
        a, b = compute_checksum(b"a"), compute_checksum(b"b")
        self.assertNotEqual(tree_checksum([a, b]), tree_checksum([b, a]))
        self.assertEqual(tree_checksum([a, b]), tree_checksum([a, b]))

    def test_tree_checksum_hashes_concatenated_checksums(self):
        a, b = compute_checksum(b"a"), compute_checksum(b"b")
        expected = "sha256-" + hashlib.sha256((a + b).encode('ascii')).hexdigest()
        self.assertEqual(tree_checksum([a, b]), expected)


class TestRetryPolicy:

    def _policy(self, **kwargs):
        sleeps = []
        policy = RetryPolicy(
            retry_on=lambda e: isinstance(e, RegistryError) and e.retryable,
            sleep=sleeps.append,
            **kwargs,
        )
        return policy, sleeps

    def test_returns_first_success(self):
        policy, sleeps = self._policy()
        assert policy.call(lambda: 42) == 42
        assert sleeps == []

    def test_retries_transient_errors_with_backoff(self):
        policy, sleeps = self._policy(max_attempts=4, base_delay=1.0, multiplier=2.0)
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RegistryError(RegistryErrorKind.NETWORK, "down")
            return "ok"

        assert policy.call(flaky) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_fatal_errors_are_not_retried(self):
        policy, sleeps = self._policy(max_attempts=5)
        calls = []

        def missing():
            calls.append(1)
            raise RegistryError(RegistryErrorKind.NOT_FOUND, "nope")

        with pytest.raises(RegistryError):
            policy.call(missing)
        assert len(calls) == 1
        assert sleeps == []

    def test_gives_up_after_max_attempts(self):
        policy, sleeps = self._policy(max_attempts=3)

        def down():
            raise RegistryError(RegistryErrorKind.NETWORK, "down")

        with pytest.raises(RegistryError):
            policy.call(down)
        assert len(sleeps) == 2

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, multiplier=3.0)
        assert policy.delay_for(0) == 10.0
        assert policy.delay_for(1) == 15.0

    def test_retry_after_hint_raises_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        error = RegistryError(RegistryErrorKind.RATE_LIMITED, "slow down", retry_after=12)
        assert policy.delay_for(0, error) == 12.0

    def test_for_exceptions(self):
        policy = RetryPolicy.for_exceptions((KeyError,), max_attempts=2, sleep=lambda s: None)
        calls = []

        def lookup():
            calls.append(1)
            raise KeyError("x")

        with pytest.raises(KeyError):
            policy.call(lookup)
        assert len(calls) == 2


class TestFormatUtils:

    def test_jsonl_one_object_per_line(self):
        lines = list(format_output(iter([{'a': 1}, {'b': 2}]), 'jsonl'))
        assert [json.loads(line) for line in lines] == [{'a': 1}, {'b': 2}]

    def test_json_is_single_array(self):
        lines = list(format_output(iter([{'a': 1}]), 'json'))
        assert json.loads(lines[0]) == [{'a': 1}]

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            list(format_output(iter([]), 'csv'))

    def test_format_from_env(self):
        with patch.dict(os.environ, {'BDP_FORMAT': 'yaml'}):
            assert get_format_from_env() == 'yaml'
        with patch.dict(os.environ, {'BDP_FORMAT': 'xml'}):
            assert get_format_from_env() == 'jsonl'

    def test_format_size(self):
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KiB"
        assert format_size(3 * 1024 ** 3) == "3.0 GiB"

    @pytest.mark.parametrize("text,seconds", [
        ("45", 45), ("45s", 45), ("90m", 5400), ("12h", 43200), ("30d", 2592000), ("2w", 1209600),
    ])
    def test_parse_duration(self, text, seconds):
        assert parse_duration(text) == seconds

    def test_parse_duration_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_duration("soon")

    @pytest.mark.parametrize("text,size", [
        ("2048", 2048), ("1K", 1024), ("1.5K", 1536), ("500M", 500 * 1024 ** 2),
        ("10GiB", 10 * 1024 ** 3), ("1t", 1024 ** 4),
    ])
    def test_parse_size(self, text, size):
        assert parse_size(text) == size

    def test_parse_size_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_size("lots")
