"""TAXII 2.1 transport: authentication, discovery, collections and objects."""

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from requests.auth import AuthBase, HTTPBasicAuth
from taxii2client.common import _HTTPConnection
from taxii2client.exceptions import (AccessError, InvalidJSONError,
                                     TAXIIServiceException, ValidationError)
from taxii2client.v21 import ApiRoot
from urllib3.util.retry import Retry

from taxii_pipeline.errors import AuthError, ParseError, TAXIIConnectionError
from taxii_pipeline.models import (BundleResponse, EnvelopeResponse, ObjectsResponse,
                                   STIXBundle, TAXIIServer)

logger = logging.getLogger(__name__)

TAXII_MEDIA_TYPE = 'application/taxii+json;version=2.1'
ACCEPTED_MEDIA_TYPES = ('application/taxii+json', 'application/stix+json')
DATE_ADDED_LAST_HEADER = 'X-TAXII-Date-Added-Last'
DEFAULT_TIMEOUT = 30
DEFAULT_PAGE_SIZE = 1000
READ_CHUNK_SIZE = 1024


class BearerAuth(AuthBase):
    """Sends an API key as `Authorization: Bearer <key>`."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers['Authorization'] = f'Bearer {self.token}'
        return request


class TimeoutHTTPAdapter(HTTPAdapter):
    """HTTPAdapter that applies a default timeout to every request."""

    def __init__(self, *args, timeout: float = DEFAULT_TIMEOUT, **kwargs):
        self.timeout = timeout
        super().__init__(*args, **kwargs)

    def send(self, request, **kwargs):
        if kwargs.get('timeout') is None:
            kwargs['timeout'] = self.timeout
        return super().send(request, **kwargs)


def build_auth(server: TAXIIServer) -> Optional[AuthBase]:
    """
    Build request authentication for a server.

    Credentials missing from the server record are read from
    TAXII_USERNAME / TAXII_PASSWORD / TAXII_API_KEY.
    """
    if server.auth_type == 'basic':
        username = server.username or os.getenv('TAXII_USERNAME')
        password = server.password or os.getenv('TAXII_PASSWORD')
        if not username or not password:
            raise AuthError(f"Basic auth configured for {server.name} but no credentials set")
        return HTTPBasicAuth(username, password)

    if server.auth_type == 'api_key':
        api_key = server.api_key or os.getenv('TAXII_API_KEY')
        if not api_key:
            raise AuthError(f"API key auth configured for {server.name} but no key set")
        return BearerAuth(api_key)

    return None


def _with_slash(url: str) -> str:
    return url if url.endswith('/') else url + '/'


def discovery_url(url: str) -> str:
    """Return the discovery endpoint (`.../taxii2/`) for a server URL."""
    base = url.rstrip('/')
    if base.endswith('/taxii2'):
        return base + '/'
    return base + '/taxii2/'


def normalize_objects_response(data: Any) -> ObjectsResponse:
    """
    Classify a get-objects response body.

    Returns:
        EnvelopeResponse for TAXII envelopes, BundleResponse for raw bundles

    Raises:
        ParseError: If the body is neither
    """
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object from get objects, got {type(data).__name__}")

    if data.get('type') == 'bundle':
        objects = data.get('objects', [])
        if not isinstance(objects, list):
            raise ParseError("Bundle 'objects' must be a list")
        bundle = STIXBundle(
            id=data.get('id') or f"bundle--{uuid.uuid4()}",
            objects=objects,
            spec_version=data.get('spec_version', '2.1'),
        )
        return BundleResponse(bundle=bundle)

    if 'objects' in data:
        if not isinstance(data['objects'], list):
            raise ParseError("Envelope 'objects' must be a list")
        return EnvelopeResponse(objects=data['objects'], more=bool(data.get('more', False)),
                                next=data.get('next'))

    # An envelope with nothing to return may omit 'objects'
    if set(data) <= {'more', 'next'}:
        return EnvelopeResponse(objects=[], more=bool(data.get('more', False)),
                                next=data.get('next'))

    raise ParseError(f"Unrecognized get objects response with keys {sorted(data)[:10]}")


class TAXIIClient:
    """TAXII 2.1 client for one server, sharing one HTTP session."""

    def __init__(self, server: TAXIIServer,
                 timeout: float = DEFAULT_TIMEOUT,
                 retries: int = 3,
                 backoff_factor: float = 0.5):
        """
        Args:
            server: Server to talk to
            timeout: Per-request timeout in seconds
            retries: Retries for 429/5xx on idempotent requests
            backoff_factor: urllib3 retry backoff factor
        """
        self.server = server
        self.timeout = timeout
        self.conn = _HTTPConnection(verify=server.verify_ssl, version='2.1',
                                    auth=build_auth(server))
        self.conn.session.headers.update({
            'Accept': TAXII_MEDIA_TYPE,
            'Content-Type': TAXII_MEDIA_TYPE,
        })

        retry_strategy = Retry(
            total=retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=['GET', 'HEAD'],
            raise_on_status=False,
        )
        adapter = TimeoutHTTPAdapter(timeout=timeout, max_retries=retry_strategy)
        self.conn.session.mount('https://', adapter)
        self.conn.session.mount('http://', adapter)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.conn.close()

    @contextmanager
    def _translate_errors(self, action: str):
        try:
            yield
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                raise AuthError(f"{action} on {self.server.name} rejected: HTTP {status}",
                                status_code=status) from e
            raise TAXIIConnectionError(f"{action} on {self.server.name} failed: HTTP {status}") from e
        except requests.RequestException as e:
            raise TAXIIConnectionError(f"{action} on {self.server.name} failed: {e}") from e
        except (InvalidJSONError, ValidationError) as e:
            raise ParseError(f"{action} on {self.server.name} returned invalid data: {e}") from e
        except AccessError as e:
            raise AuthError(f"{action} on {self.server.name} not permitted: {e}") from e
        except TAXIIServiceException as e:
            raise TAXIIConnectionError(f"{action} on {self.server.name} failed: {e}") from e

    def _request_timeout(self, url: str, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TAXIIConnectionError(f"Deadline passed before requesting {url}")
        return min(self.timeout, remaining)

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                  deadline: Optional[float] = None) -> Tuple[Any, Mapping[str, str]]:
        """
        GET a TAXII endpoint and decode its JSON body.

        The body is streamed so that `deadline` (a time.monotonic() value)
        bounds the whole transfer, not just each socket read.

        Returns:
            (decoded body, response headers)
        """
        response = self.conn.session.get(url, params=params, stream=True,
                                         timeout=self._request_timeout(url, deadline))
        try:
            response.raise_for_status()

            content_type = response.headers.get('Content-Type', '')
            media_type = content_type.split(';')[0].strip().lower()
            if media_type not in ACCEPTED_MEDIA_TYPES:
                raise TAXIIServiceException(f"Unexpected Content-Type {content_type!r} from {url}")

            chunks = []
            for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
                chunks.append(chunk)
                if deadline is not None and time.monotonic() > deadline:
                    raise TAXIIConnectionError(f"Deadline passed while reading {url}")
            body = b''.join(chunks)
        finally:
            response.close()

        try:
            return json.loads(body.decode(response.encoding or 'utf-8')), response.headers
        except ValueError as e:
            raise ParseError(f"Invalid JSON from {url}: {e}") from e

    def discover(self, url: Optional[str] = None, deadline: Optional[float] = None) -> List[str]:
        """
        Run server discovery.

        Only `api_roots` is read from the discovery document; relative
        entries are resolved against the discovery URL.

        Args:
            url: Server URL, defaults to the configured one
            deadline: time.monotonic() value bounding the request

        Returns:
            API root URLs advertised by the server
        """
        target = discovery_url(url or self.server.url)
        logger.info(f"Discovering TAXII server {self.server.name} at {target}")

        with self._translate_errors('Discovery'):
            data, _ = self._get_json(target, deadline=deadline)

        api_roots = data.get('api_roots', []) if isinstance(data, dict) else None
        if not isinstance(api_roots, list) or not all(isinstance(r, str) for r in api_roots):
            raise ParseError(f"Discovery on {self.server.name} returned no valid api_roots list")
        return [_with_slash(urljoin(target, api_root)) for api_root in api_roots]

    def list_collections(self, api_root: str) -> List[Dict[str, Any]]:
        """
        List the collections under an API root.

        Returns:
            Collection info dictionaries (id, title, description, can_read,
            can_write, media_types)
        """
        with self._translate_errors('List collections'):
            root = ApiRoot(_with_slash(api_root), conn=self.conn)
            collections = root.collections

        return [
            {
                'id': collection.id,
                'title': collection.title,
                'description': collection.description,
                'can_read': bool(collection.can_read),
                'can_write': bool(collection.can_write),
                'media_types': list(collection.media_types or []),
            }
            for collection in collections
        ]

    def get_objects(self, api_root: str, collection_id: str,
                    added_after: Optional[str] = None,
                    limit: int = DEFAULT_PAGE_SIZE,
                    next_token: Optional[str] = None,
                    deadline: Optional[float] = None) -> ObjectsResponse:
        """
        Fetch one page of objects from a collection.

        Args:
            api_root: API root URL
            collection_id: Collection id
            added_after: Only objects added after this timestamp
            limit: Page size
            next_token: `next` value from the previous page
            deadline: time.monotonic() value bounding the request

        Returns:
            Normalized response; envelopes carry the server's
            X-TAXII-Date-Added-Last header when present
        """
        url = f"{_with_slash(api_root)}collections/{collection_id}/objects/"
        params = {'limit': limit}
        if added_after:
            params['added_after'] = added_after
        if next_token:
            params['next'] = next_token

        logger.debug(f"GET {url} params={params}")
        with self._translate_errors(f"Get objects from {collection_id}"):
            data, headers = self._get_json(url, params=params, deadline=deadline)

        response = normalize_objects_response(data)
        if isinstance(response, EnvelopeResponse):
            response.date_added_last = headers.get(DATE_ADDED_LAST_HEADER)
        return response
