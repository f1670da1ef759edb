"""Shared test fixtures."""

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import pytest

from taxii_pipeline.ingestion import STIXBundleParser, TAXIICollectionPoller
from taxii_pipeline.ingestion.taxii_client import TAXII_MEDIA_TYPE, normalize_objects_response
from taxii_pipeline.models import TAXIICollectionState, TAXIIServer
from taxii_pipeline.storage import ThreatIntelDB

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
API_ROOT = 'https://taxii.example.com/api1/'


class FakeClock:
    """Settable stand-in for utcnow()."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeTAXIIClient:
    """
    In-memory TAXII client.

    Doubles as its own factory so a test can configure one instance and
    hand it to the poller as `client_factory`.
    """

    def __init__(self):
        self.api_roots = [API_ROOT]
        self.collections = [{
            'id': 'collection-1',
            'title': 'Indicators',
            'description': 'Test indicator feed',
            'can_read': True,
            'can_write': False,
            'media_types': ['application/stix+json;version=2.1'],
        }]
        self.objects_response = {'objects': []}
        self.errors = {}
        self.calls = []
        self.servers = []

    def __call__(self, server):
        self.servers.append(server)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def _maybe_raise(self, method):
        if method in self.errors:
            raise self.errors[method]

    def discover(self, url=None, deadline=None):
        self.calls.append(('discover', url))
        self._maybe_raise('discover')
        return list(self.api_roots)

    def list_collections(self, api_root):
        self.calls.append(('list_collections', api_root))
        self._maybe_raise('list_collections')
        return [dict(c) for c in self.collections]

    def get_objects(self, api_root, collection_id, added_after=None, limit=1000,
                    next_token=None, deadline=None):
        self.calls.append(('get_objects', api_root, collection_id, added_after, limit))
        self._maybe_raise('get_objects')
        return normalize_objects_response(self.objects_response)


class TAXIIRequestHandler(BaseHTTPRequestHandler):
    """Serves the canned routes of a LocalTAXIIServer."""

    def do_GET(self):
        url = urlsplit(self.path)
        self.server.requests.append({
            'path': url.path,
            'query': {k: v[0] for k, v in parse_qs(url.query).items()},
            'headers': dict(self.headers),
        })

        route = self.server.routes.get(url.path)
        if route is None:
            route = {'status': 404, 'body': {'title': 'Not found'}}
        if callable(route):
            route = route(self.server.requests[-1])

        body = route.get('body', {})
        payload = body if isinstance(body, bytes) else json.dumps(body).encode()

        self.send_response(route.get('status', 200))
        self.send_header('Content-Type', route.get('content_type', TAXII_MEDIA_TYPE))
        self.send_header('Content-Length', str(len(payload)))
        for name, value in route.get('headers', {}).items():
            self.send_header(name, value)
        self.end_headers()

        drip = route.get('drip')
        try:
            if drip:
                # 256 bytes every `drip` seconds
                for start in range(0, len(payload), 256):
                    self.wfile.write(payload[start:start + 256])
                    time.sleep(drip)
            else:
                self.wfile.write(payload)
        except OSError:
            pass

    def log_message(self, format, *args):
        pass


class LocalTAXIIServer(ThreadingHTTPServer):
    """
    HTTP server on 127.0.0.1 answering from a dict of routes.

    A route is a dict with `body` and optional `status`, `content_type`,
    `headers` and `drip`, or a callable taking the recorded request and
    returning one.
    """

    daemon_threads = True

    def __init__(self):
        super().__init__(('127.0.0.1', 0), TAXIIRequestHandler)
        self.routes = {}
        self.requests = []
        self.url = f"http://127.0.0.1:{self.server_address[1]}"


def make_indicator(pattern="[ipv4-addr:value = '203.0.113.7']", **overrides):
    indicator = {
        'type': 'indicator',
        'spec_version': '2.1',
        'id': 'indicator--8e2e2d2b-17d4-4cbf-938f-98ee46b3cd3f',
        'created': '2024-01-01T00:00:00.000Z',
        'modified': '2024-01-01T00:00:00.000Z',
        'name': 'Test indicator',
        'pattern': pattern,
        'pattern_type': 'stix',
        'valid_from': '2024-01-01T00:00:00Z',
        'labels': ['malicious-activity'],
        'confidence': 90,
    }
    indicator.update(overrides)
    return indicator


def make_relationship(**overrides):
    relationship = {
        'type': 'relationship',
        'spec_version': '2.1',
        'id': 'relationship--44298a74-ba52-4f0c-87a3-1824e67d7fad',
        'created': '2024-01-01T00:00:00.000Z',
        'modified': '2024-01-01T00:00:00.000Z',
        'relationship_type': 'indicates',
        'source_ref': 'indicator--8e2e2d2b-17d4-4cbf-938f-98ee46b3cd3f',
        'target_ref': 'malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b',
    }
    relationship.update(overrides)
    return relationship


def make_malware(**overrides):
    malware = {
        'type': 'malware',
        'spec_version': '2.1',
        'id': 'malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b',
        'created': '2024-01-01T00:00:00.000Z',
        'modified': '2024-01-01T00:00:00.000Z',
        'name': 'Poison Ivy',
        'is_family': True,
    }
    malware.update(overrides)
    return malware


def make_bundle(*objects, bundle_id='bundle--5d0092c5-5f74-4287-9642-33f4c354e56d'):
    return {'type': 'bundle', 'id': bundle_id, 'objects': list(objects)}


@pytest.fixture
def db(tmp_path):
    return ThreatIntelDB(str(tmp_path / 'test.db'))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    return FakeTAXIIClient()


@pytest.fixture
def parser(db):
    return STIXBundleParser(db)


@pytest.fixture
def poller(db, parser, fake_client, clock):
    return TAXIICollectionPoller(db, parser, client_factory=fake_client, clock=clock)


@pytest.fixture
def server(db):
    server = TAXIIServer(name='test-server', url='https://taxii.example.com', api_root=API_ROOT)
    db.upsert_server(server)
    return server


@pytest.fixture
def collection(db, server):
    state = TAXIICollectionState(
        server_id=server.id,
        collection_id='collection-1',
        title='Indicators',
        polling_interval_minutes=60,
    )
    db.upsert_collection(state)
    return db.get_collection(state.id)


@pytest.fixture
def taxii_server():
    httpd = LocalTAXIIServer()
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()
