"""
Tests for the registry HTTP client, with the requests session mocked out.
"""

import unittest
from unittest.mock import MagicMock

import requests

from bdp.domain.entry import SOURCE, TOOL
from bdp.domain.spec import parse_spec
from bdp.errors import RegistryError, RegistryErrorKind
from bdp.infra.registry_client import RegistryClient, default_retry_policy

CHECKSUM = "sha256-" + "ab" * 32


def _response(status=200, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.text = text
    response.reason = "reason"
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


class TestRegistryClient(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.sleeps = []
        retry = default_retry_policy(max_attempts=3, base_delay=0.5)
        retry.sleep = self.sleeps.append
        self.client = RegistryClient("http://registry.test/api/v1/", session=self.session, retry=retry)

    def test_resolve_builds_url_and_entry(self):
        self.session.get.return_value = _response(payload={
            'checksum': CHECKSUM, 'size_bytes': 10, 'external_version': '2025_01',
        })
        entry = self.client.resolve(parse_spec("uniprot:P01308-fasta@1.0"))

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://registry.test/api/v1/sources/uniprot/P01308/1.0")
        self.assertEqual(kwargs['params'], {'format': 'fasta'})
        self.assertEqual(entry.checksum, CHECKSUM)
        self.assertEqual(entry.size_bytes, 10)
        self.assertEqual(entry.kind, SOURCE)

    def test_tools_use_tools_collection(self):
        self.session.get.return_value = _response(payload={'checksum': CHECKSUM, 'size_bytes': 1})
        entry = self.client.resolve(parse_spec("ncbi:blast@2.14.0"), TOOL)
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://registry.test/api/v1/tools/ncbi/blast/2.14.0")
        self.assertIsNone(kwargs['params'])
        self.assertEqual(entry.kind, TOOL)

    def test_envelope_is_unwrapped(self):
        self.session.get.return_value = _response(payload={
            'success': True,
            'data': {'checksum': CHECKSUM, 'size_bytes': 3, 'has_dependencies': True, 'dependency_count': 2},
        })
        entry = self.client.resolve(parse_spec("uniprot:all-fasta@1.0"))
        self.assertTrue(entry.is_aggregate)
        self.assertEqual(entry.dependency_count, 2)

    def test_failed_envelope_is_not_found(self):
        self.session.get.return_value = _response(payload={
            'success': False, 'error': {'message': 'no such source'},
        })
        with self.assertRaises(RegistryError) as ctx:
            self.client.resolve(parse_spec("uniprot:nope@1.0"))
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.NOT_FOUND)

    def test_404_is_fatal_and_not_retried(self):
        self.session.get.return_value = _response(404, payload={'error': 'not found'})
        with self.assertRaises(RegistryError) as ctx:
            self.client.resolve(parse_spec("uniprot:nope@1.0"))
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.NOT_FOUND)
        self.assertEqual(ctx.exception.exit_code, 69)
        self.assertEqual(self.session.get.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_409_is_version_mismatch(self):
        self.session.get.return_value = _response(409, payload={'message': 'version retired'})
        with self.assertRaises(RegistryError) as ctx:
            self.client.resolve(parse_spec("uniprot:P01308@0.1"))
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.VERSION_MISMATCH)

    def test_server_errors_are_retried(self):
        self.session.get.return_value = _response(503, text="unavailable")
        with self.assertRaises(RegistryError) as ctx:
            self.client.resolve(parse_spec("uniprot:P01308@1.0"))
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.NETWORK)
        self.assertEqual(ctx.exception.exit_code, 75)
        self.assertEqual(self.session.get.call_count, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_connection_error_then_success(self):
        self.session.get.side_effect = [
            requests.ConnectionError("refused"),
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 1}),
        ]
        entry = self.client.resolve(parse_spec("uniprot:P01308@1.0"))
        self.assertEqual(entry.checksum, CHECKSUM)
        self.assertEqual(self.session.get.call_count, 2)

    def test_rate_limit_honors_retry_after(self):
        self.session.get.side_effect = [
            _response(429, payload={}, headers={'Retry-After': '4'}),
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 1}),
        ]
        self.client.resolve(parse_spec("uniprot:P01308@1.0"))
        self.assertEqual(self.sleeps, [4.0])

    def test_missing_checksum_is_inconsistent(self):
        self.session.get.return_value = _response(payload={'size_bytes': 1})
        with self.assertRaises(RegistryError) as ctx:
            self.client.resolve(parse_spec("uniprot:P01308@1.0"))
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.INCONSISTENT)

    def test_fetch_dependencies_page(self):
        self.session.get.side_effect = [
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 0, 'has_dependencies': True,
                               'dependency_count': 3}),
            _response(payload={
                'dependencies': [
                    {'source': 'uniprot:P01308-fasta@1.0', 'checksum': "1" * 64, 'size': 5},
                    {'source': 'uniprot:P01315-fasta@1.0', 'checksum': "2" * 64, 'size': 6},
                ],
                'pagination': {'page': 1, 'pages': 2, 'total': 3},
            }),
        ]
        entry = self.client.resolve(parse_spec("uniprot:all-fasta@1.0"))
        items, pages = self.client.fetch_dependencies(entry, page=1, page_size=2)

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://registry.test/api/v1/sources/uniprot/all/1.0/dependencies")
        self.assertEqual(kwargs['params'], {'page': 1, 'limit': 2, 'format': 'fasta'})
        self.assertEqual(pages, 2)
        self.assertEqual([i.source for i in items], ['uniprot:P01308-fasta@1.0', 'uniprot:P01315-fasta@1.0'])
        self.assertEqual(items[0].checksum, "sha256-" + "1" * 64)

    def test_malformed_dependency_page(self):
        self.session.get.side_effect = [
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 0, 'has_dependencies': True}),
            _response(payload={'items': []}),
        ]
        entry = self.client.resolve(parse_spec("uniprot:all-fasta@1.0"))
        with self.assertRaises(RegistryError) as ctx:
            self.client.fetch_dependencies(entry, page=1)
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.INCONSISTENT)

    def test_open_download_sends_range_and_reads_206(self):
        self.session.get.side_effect = [
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 100}),
            _response(206),
        ]
        entry = self.client.resolve(parse_spec("uniprot:P01308-fasta@1.0"))
        stream = self.client.open_download(entry, offset=40)

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "http://registry.test/api/v1/sources/uniprot/P01308/1.0/download")
        self.assertEqual(kwargs['headers']['Range'], "bytes=40-")
        self.assertTrue(kwargs['stream'])
        self.assertEqual(stream.start, 40)

    def test_open_download_without_range_support(self):
        self.session.get.side_effect = [
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 100}),
            _response(200),
        ]
        entry = self.client.resolve(parse_spec("uniprot:P01308-fasta@1.0"))
        stream = self.client.open_download(entry, offset=40)
        self.assertEqual(stream.start, 0)

    def test_failed_download_response_is_closed(self):
        unavailable = _response(503, text="unavailable")
        missing = _response(404, text="gone")
        self.session.get.side_effect = [
            _response(payload={'checksum': CHECKSUM, 'size_bytes': 100}),
            unavailable,
            missing,
        ]
        entry = self.client.resolve(parse_spec("uniprot:P01308-fasta@1.0"))
        with self.assertRaises(RegistryError) as ctx:
            self.client.open_download(entry)
        self.assertEqual(ctx.exception.kind, RegistryErrorKind.NOT_FOUND)
        unavailable.close.assert_called_once_with()
        missing.close.assert_called_once_with()

    def test_download_url_from_metadata_wins(self):
        self.session.get.return_value = _response(payload={
            'checksum': CHECKSUM, 'size_bytes': 1, 'download_url': 'https://cdn.test/P01308.fasta',
        })
        entry = self.client.resolve(parse_spec("uniprot:P01308-fasta@1.0"))
        self.assertEqual(self.client.download_url(entry), 'https://cdn.test/P01308.fasta')

    def test_from_config(self):
        client = RegistryClient.from_config({
            'registry': {'url': 'http://example.test/api/v1', 'timeout_seconds': 5, 'page_size': 50,
                         'max_retries': 2},
        })
        self.assertEqual(client.base_url, 'http://example.test/api/v1')
        self.assertEqual(client.timeout, 5)
        self.assertEqual(client.page_size, 50)
        self.assertEqual(client.retry.max_attempts, 2)
