"""
Registry API client infrastructure for bdp.

Provides access to the BDP registry:
- Resolve a spec to its checksum, size and aggregate flag
- Page through an aggregate's dependency list
- Stream file downloads, resuming with HTTP Range requests

Endpoints (relative to the configured base URL):
    GET /sources/{org}/{name}/{version}?format=
    GET /sources/{org}/{name}/{version}/dependencies?format=&page=&limit=
    GET /sources/{org}/{name}/{version}/download?format=
and the same under /tools for tools.

Every call is idempotent. Network failures and rate limiting are retried
through a RetryPolicy; everything else surfaces as a fatal RegistryError.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from ..domain.entry import DependencyRef, ResolvedEntry, SOURCE, TOOL
from ..domain.spec import SourceSpec
from ..errors import RegistryError, RegistryErrorKind
from ..retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api/v1"

# Large file downloads can take a while to start streaming
DEFAULT_TIMEOUT = 300

DEFAULT_PAGE_SIZE = 1000

_COLLECTIONS = {SOURCE: "sources", TOOL: "tools"}


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, RegistryError) and exc.retryable


def default_retry_policy(max_attempts: int = 4, base_delay: float = 1.0,
                         max_delay: float = 30.0) -> RetryPolicy:
    """Backoff policy for registry calls: retry network and rate-limit errors only."""
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        retry_on=_retryable,
    )


@dataclass
class DownloadStream:
    """
    An open download response.

    ``start`` is the byte offset the body begins at: the requested offset
    when the server honored the Range header, 0 when it sent the whole file.
    """
    start: int
    response: requests.Response
    total_size: Optional[int] = None

    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        return self.response.iter_content(chunk_size=chunk_size)

    def close(self) -> None:
        self.response.close()


class RegistryClient:
    """
    Client for the BDP registry REST API.

    Example:
        client = RegistryClient("http://localhost:8000/api/v1")
        entry = client.resolve(SourceSpec.parse("uniprot:P01308-fasta@1.0"))
        items, pages = client.fetch_dependencies(entry, page=1)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        retry: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize RegistryClient.

        Args:
            base_url: Registry API root, e.g. http://localhost:8000/api/v1
            timeout: HTTP request timeout in seconds
            page_size: Dependency rows requested per page
            retry: Backoff policy for transient failures
            session: Optional pre-configured requests session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.page_size = page_size
        self.retry = retry or default_retry_policy()
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'bdp-client',
        })

    @classmethod
    def from_config(cls, config: dict) -> 'RegistryClient':
        registry = config.get('registry') or {}
        return cls(
            base_url=registry.get('url') or DEFAULT_BASE_URL,
            timeout=registry.get('timeout_seconds', DEFAULT_TIMEOUT),
            page_size=registry.get('page_size', DEFAULT_PAGE_SIZE),
            retry=default_retry_policy(
                max_attempts=registry.get('max_retries', 4),
                base_delay=registry.get('base_delay_seconds', 1.0),
                max_delay=registry.get('max_delay_seconds', 30.0),
            ),
        )

    # -- URLs -------------------------------------------------------------

    def _item_url(self, spec: SourceSpec, kind: str) -> str:
        collection = _COLLECTIONS.get(kind)
        if collection is None:
            raise ValueError(f"Unknown registry kind: {kind}")
        return f"{self.base_url}/{collection}/{spec.organization}/{spec.name}/{spec.version}"

    def download_url(self, entry: ResolvedEntry) -> str:
        if entry.download_url:
            return entry.download_url
        return f"{self._item_url(entry.spec, entry.kind)}/download"

    # -- Requests ---------------------------------------------------------

    def _get(self, url: str, spec: str, params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None, stream: bool = False) -> requests.Response:
        logger.debug(f"GET {url} {params or ''}")
        try:
            response = self.session.get(
                url, params=params, headers=headers, timeout=self.timeout, stream=stream,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RegistryError(RegistryErrorKind.NETWORK, f"Registry unreachable: {e}", spec) from e
        except requests.RequestException as e:
            raise RegistryError(RegistryErrorKind.NETWORK, f"Registry request failed: {e}", spec) from e

        try:
            _raise_for_status(response, spec)
        except RegistryError:
            # Error bodies of streamed downloads hold the connection until closed
            response.close()
            raise
        return response

    def _get_json(self, url: str, spec: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._get(url, spec, params=params)
        try:
            payload = response.json()
        except ValueError as e:
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT, f"Registry returned invalid JSON: {e}", spec
            ) from e
        return _unwrap(payload, spec)

    def resolve(self, spec: SourceSpec, kind: str = SOURCE) -> ResolvedEntry:
        """
        Look up one spec.

        Raises:
            RegistryError: NOT_FOUND or VERSION_MISMATCH immediately,
                NETWORK or RATE_LIMITED after retries are exhausted
        """
        return self.retry.call(self._resolve_once, spec, kind)

    def _resolve_once(self, spec: SourceSpec, kind: str) -> ResolvedEntry:
        params = {'format': spec.format} if spec.format else None
        data = self._get_json(self._item_url(spec, kind), str(spec), params=params)
        if not isinstance(data, dict) or 'checksum' not in data:
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT, f"Registry metadata for {spec} has no checksum", str(spec)
            )
        entry = ResolvedEntry.from_registry(spec, data, kind=kind)
        logger.debug(
            f"Resolved {spec}: {entry.checksum} ({entry.size_bytes} bytes"
            f"{', aggregate of %d' % entry.dependency_count if entry.has_dependencies else ''})"
        )
        return entry

    def fetch_dependencies(self, resolved: ResolvedEntry, page: int,
                           page_size: Optional[int] = None) -> Tuple[List[DependencyRef], int]:
        """
        Fetch one page of an aggregate's dependency list.

        Returns:
            (items, total_pages)
        """
        return self.retry.call(self._fetch_page_once, resolved, page, page_size or self.page_size)

    def _fetch_page_once(self, resolved: ResolvedEntry, page: int,
                         page_size: int) -> Tuple[List[DependencyRef], int]:
        spec = resolved.spec
        params: Dict[str, Any] = {'page': page, 'limit': page_size}
        if spec.format:
            params['format'] = spec.format
        data = self._get_json(f"{self._item_url(spec, resolved.kind)}/dependencies", str(spec), params=params)

        rows = data.get('dependencies') if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT,
                f"Dependency page {page} for {spec} has no 'dependencies' list", str(spec),
            )
        pagination = data.get('pagination') or {}
        try:
            items = [DependencyRef.from_dict(row) for row in rows]
            total_pages = int(pagination.get('pages', page if items else 0))
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryError(
                RegistryErrorKind.INCONSISTENT,
                f"Malformed dependency page {page} for {spec}: {e}", str(spec),
            ) from e
        return items, total_pages

    def open_download(self, entry: ResolvedEntry, offset: int = 0) -> DownloadStream:
        """
        Start streaming a file, asking the server to skip ``offset`` bytes.

        The caller must check ``DownloadStream.start``: a server that
        ignores Range sends the whole file from byte 0.
        """
        return self.retry.call(self._open_download_once, entry, offset)

    def _open_download_once(self, entry: ResolvedEntry, offset: int) -> DownloadStream:
        headers = {'Accept': '*/*'}
        if offset > 0:
            headers['Range'] = f"bytes={offset}-"
        params = {'format': entry.file_format}
        response = self._get(self.download_url(entry), str(entry.spec), params=params,
                             headers=headers, stream=True)

        start = offset if response.status_code == 206 else 0
        if offset and not start:
            logger.debug(f"{entry.spec}: server ignored Range, restarting from byte 0")
        return DownloadStream(start=start, response=response, total_size=entry.size_bytes)


def _unwrap(payload: Any, spec: str) -> Any:
    """Unwrap ``{success, data, error}`` envelopes; pass bare payloads through."""
    if isinstance(payload, dict) and 'success' in payload:
        if not payload.get('success'):
            error = payload.get('error') or {}
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise RegistryError(RegistryErrorKind.NOT_FOUND, message or "Registry request failed", spec)
        return payload.get('data')
    return payload


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason or ''
    if isinstance(payload, dict):
        error = payload.get('error')
        if isinstance(error, dict):
            return str(error.get('message') or error)
        if error:
            return str(error)
        if payload.get('message'):
            return str(payload['message'])
    return str(payload)[:200]


def _raise_for_status(response: requests.Response, spec: str) -> None:
    status = response.status_code
    if status < 400:
        return

    detail = _error_message(response)
    if status == 404:
        raise RegistryError(RegistryErrorKind.NOT_FOUND, f"{spec} not found in registry: {detail}", spec)
    if status == 429:
        retry_after = response.headers.get('Retry-After')
        try:
            hint = float(retry_after) if retry_after else None
        except ValueError:
            hint = None
        raise RegistryError(RegistryErrorKind.RATE_LIMITED, f"Registry rate limit hit for {spec}", spec,
                            retry_after=hint)
    if status in (400, 409, 422):
        raise RegistryError(RegistryErrorKind.VERSION_MISMATCH,
                            f"Registry rejected {spec}: {detail}", spec)
    if status >= 500:
        raise RegistryError(RegistryErrorKind.NETWORK,
                            f"Registry server error {status} for {spec}: {detail}", spec)
    raise RegistryError(RegistryErrorKind.NOT_FOUND, f"Registry returned {status} for {spec}: {detail}", spec)
