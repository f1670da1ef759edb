"""Polls TAXII collections and feeds the results to the bundle parser."""

import functools
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from taxii_pipeline.errors import ParseError, SchedulingError, TAXIIConnectionError
from taxii_pipeline.ingestion.stix_parser import STIXBundleParser
from taxii_pipeline.ingestion.taxii_client import (DATE_ADDED_LAST_HEADER, DEFAULT_PAGE_SIZE,
                                                   TAXIIClient)
from taxii_pipeline.models import (EnvelopeResponse, ParseResult, PollResult,
                                   TAXIICollectionState, TAXIIServer)
from taxii_pipeline.utils import add_minutes, format_timestamp, normalize_timestamp, utcnow

DEFAULT_MAX_PAGES = 10
DEFAULT_COLLECTION_TIMEOUT = 60

logger = logging.getLogger(__name__)


class TAXIICollectionPoller:
    """Runs discovery and incremental polls against configured TAXII servers."""

    def __init__(self, db, parser: STIXBundleParser,
                 client_factory: Callable[[TAXIIServer], Any] = TAXIIClient,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 max_pages: int = DEFAULT_MAX_PAGES,
                 collection_timeout_seconds: float = DEFAULT_COLLECTION_TIMEOUT,
                 error_backoff: bool = False,
                 max_backoff_multiplier: int = 6,
                 default_interval_minutes: int = 60,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            db: ThreatIntelDB holding servers and collection state
            parser: Parser that stores fetched bundles
            client_factory: Builds a TAXII client for a server
            page_size: Max objects requested per page
            max_pages: Max pages fetched per poll, the rest waits for the next sweep
            collection_timeout_seconds: Overall time allowed for one collection poll
            error_backoff: Push next_poll_at out after failed polls
            max_backoff_multiplier: Cap on the backoff interval multiplier
            default_interval_minutes: Poll interval for newly discovered collections
            clock: Returns the current UTC time
        """
        self.db = db
        self.parser = parser
        self.client_factory = client_factory
        self.page_size = page_size
        self.max_pages = max_pages
        self.collection_timeout_seconds = collection_timeout_seconds
        self.error_backoff = error_backoff
        self.max_backoff_multiplier = max_backoff_multiplier
        self.default_interval_minutes = default_interval_minutes
        self.clock = clock

    @classmethod
    def from_config(cls, config, db, parser: STIXBundleParser) -> 'TAXIICollectionPoller':
        client_factory = functools.partial(
            TAXIIClient,
            timeout=config.get('http.timeout_seconds', 30),
            retries=config.get('http.retries', 3),
            backoff_factor=config.get('http.backoff_factor', 0.5),
        )
        return cls(
            db, parser,
            client_factory=client_factory,
            page_size=config.get('polling.page_size', DEFAULT_PAGE_SIZE),
            max_pages=config.get('polling.max_pages', DEFAULT_MAX_PAGES),
            collection_timeout_seconds=config.get('polling.collection_timeout_seconds',
                                                  DEFAULT_COLLECTION_TIMEOUT),
            error_backoff=config.get('polling.error_backoff', False),
            max_backoff_multiplier=config.get('polling.max_backoff_multiplier', 6),
            default_interval_minutes=config.get('polling.default_interval_minutes', 60),
        )

    def test_connection(self, server: TAXIIServer) -> Dict[str, Any]:
        """
        Check that a server answers discovery and lists collections.

        Returns:
            {'success': True, 'api_roots': [...], 'collection_count': n}

        Raises:
            TAXIIConnectionError: Server unreachable, malformed or without API roots
            AuthError: Credentials rejected
        """
        with self.client_factory(server) as client:
            try:
                api_roots = client.discover(server.url)
                if not api_roots:
                    raise TAXIIConnectionError(f"No API roots advertised by {server.name}")
                collections = client.list_collections(server.api_root or api_roots[0])
            except ParseError as e:
                raise TAXIIConnectionError(f"Malformed response from {server.name}: {e}") from e

        logger.info(f"Connection to {server.name} OK: {len(api_roots)} API roots, "
                    f"{len(collections)} collections")
        return {
            'success': True,
            'api_roots': api_roots,
            'collection_count': len(collections),
        }

    def discover_collections(self, server_id: int) -> int:
        """
        Discover and register the collections of a server.

        Existing collections only get their descriptive fields refreshed.

        Returns:
            Number of collections found

        Raises:
            SchedulingError: Unknown server
        """
        server = self.db.get_server(server_id)
        if server is None:
            raise SchedulingError(f"TAXII server {server_id} not found")

        with self.client_factory(server) as client:
            api_root = self._resolve_api_root(client, server)
            collections = client.list_collections(api_root)

        for info in collections:
            self.db.upsert_collection(TAXIICollectionState(
                server_id=server.id,
                collection_id=info['id'],
                title=info.get('title') or info['id'],
                description=info.get('description'),
                can_read=bool(info.get('can_read', True)),
                can_write=bool(info.get('can_write', False)),
                media_types=list(info.get('media_types') or []),
                polling_interval_minutes=self.default_interval_minutes,
            ))

        logger.info(f"Discovered {len(collections)} collections on {server.name}")
        return len(collections)

    def poll_collection(self, collection_state_id: int) -> PollResult:
        """
        Fetch new objects from one collection and store them.

        Fetches only objects added after the last successful poll, page by
        page, within collection_timeout_seconds. When max_pages is reached the
        cursor stops at the last stored page and the collection stays due.
        The outcome is recorded on the collection state and as a sync job
        row; failures are re-raised after being recorded.

        Raises:
            SchedulingError: Collection missing or unreadable, or server inactive
        """
        state = self.db.get_collection(collection_state_id)
        if state is None:
            raise SchedulingError(f"Collection {collection_state_id} not found")
        if not state.can_read:
            raise SchedulingError(f"Collection {state.collection_id} is not readable")
        server = self.db.get_server(state.server_id)
        if server is None or not server.is_active:
            raise SchedulingError(f"Server for collection {state.collection_id} is not active")

        started_at = self.clock()
        deadline = time.monotonic() + self.collection_timeout_seconds
        logger.info(f"Polling collection {state.title} ({state.collection_id}) on {server.name}"
                    f" added_after={state.last_poll_at}")

        try:
            with self.client_factory(server) as client:
                api_root = self._resolve_api_root(client, server, deadline)
                totals, cursor, has_more = self._fetch_pages(client, api_root, state, server,
                                                             deadline)
        except TAXIIConnectionError as e:
            if time.monotonic() < deadline:
                self._record_failure(state, started_at, e)
                raise
            timeout_error = TAXIIConnectionError(
                f"Poll of {state.collection_id} timed out after "
                f"{self.collection_timeout_seconds}s: {e}")
            self._record_failure(state, started_at, timeout_error)
            raise timeout_error from e
        except Exception as e:
            self._record_failure(state, started_at, e)
            raise

        finished_at = self.clock()
        if has_more:
            # Still due: the next sweep resumes from the cursor
            polled_at = cursor
            next_poll_at = format_timestamp(finished_at)
        else:
            polled_at = format_timestamp(finished_at)
            next_poll_at = format_timestamp(add_minutes(finished_at, state.polling_interval_minutes))

        self.db.record_poll_success(state.id, polled_at, next_poll_at, totals.objects_stored)
        self.db.insert_sync_job(
            state.id, format_timestamp(started_at), format_timestamp(finished_at), 'success',
            objects_stored=totals.objects_stored,
            relationships_stored=totals.relationships_stored,
            iocs_extracted=totals.iocs_extracted,
        )

        logger.info(f"Polled {state.collection_id}: {totals.objects_stored} objects, "
                    f"{totals.iocs_extracted} IOCs, next poll at {next_poll_at}")
        return PollResult(
            collection_id=state.id,
            objects_fetched=totals.objects_stored,
            relationships_stored=totals.relationships_stored,
            iocs_extracted=totals.iocs_extracted,
            next_poll_at=next_poll_at,
            has_more=has_more,
        )

    def _fetch_pages(self, client, api_root: str, state: TAXIICollectionState,
                     server: TAXIIServer, deadline: float) -> Tuple[ParseResult, Optional[str], bool]:
        """
        Fetch and store up to max_pages pages of a collection.

        Pages are chained with the envelope's `next` token, or, for servers
        that only send `more`, by re-requesting with added_after set to the
        previous page's cursor (see _page_cursor).

        Returns:
            (totals, cursor, has_more) where cursor is the added_after value
            to resume from when has_more is set
        """
        totals = ParseResult(bundle_id='')
        added_after = state.last_poll_at
        next_token = None

        for _ in range(self.max_pages):
            response = client.get_objects(
                api_root, state.collection_id,
                added_after=added_after,
                limit=self.page_size,
                next_token=next_token,
                deadline=deadline,
            )
            result = self.parser.parse_bundle(response.to_bundle(), server.id)
            totals.objects_stored += result.objects_stored
            totals.relationships_stored += result.relationships_stored
            totals.iocs_extracted += result.iocs_extracted

            if not (isinstance(response, EnvelopeResponse) and response.more):
                return totals, None, False

            if response.next:
                next_token = response.next
                continue
            cursor = self._page_cursor(response)
            if cursor is None or cursor == added_after:
                logger.warning(f"Collection {state.collection_id} reports more objects but gave "
                               f"no cursor to continue from")
                return totals, added_after, True
            added_after = cursor

        logger.warning(f"Collection {state.collection_id} still has more objects after "
                       f"{self.max_pages} pages; resuming on the next sweep")
        return totals, self._page_cursor(response) or added_after, True

    @staticmethod
    def _page_cursor(response: EnvelopeResponse) -> Optional[str]:
        """
        added_after value that continues after this page.

        Uses X-TAXII-Date-Added-Last, else the newest modified/created
        timestamp on the page, which no later date_added can precede.
        """
        try:
            cursor = normalize_timestamp(response.date_added_last)
        except ValueError:
            logger.warning(f"Ignoring unparseable {DATE_ADDED_LAST_HEADER}: "
                           f"{response.date_added_last!r}")
            cursor = None
        if cursor is not None:
            return cursor

        timestamps = []
        for obj in response.objects:
            if not isinstance(obj, dict):
                continue
            try:
                timestamp = normalize_timestamp(obj.get('modified') or obj.get('created'))
            except ValueError:
                continue
            if timestamp is not None:
                timestamps.append(timestamp)
        return max(timestamps) if timestamps else None

    def get_polling_statistics(self) -> Dict[str, Any]:
        return self.db.get_polling_statistics(self.clock())

    def _resolve_api_root(self, client, server: TAXIIServer,
                          deadline: Optional[float] = None) -> str:
        if server.api_root:
            return server.api_root

        api_roots = client.discover(server.url, deadline=deadline)
        if not api_roots:
            raise TAXIIConnectionError(f"No API roots advertised by {server.name}")
        server.api_root = api_roots[0]
        self.db.set_server_api_root(server.id, server.api_root)
        return server.api_root

    def _record_failure(self, state: TAXIICollectionState, started_at: datetime, error: Exception):
        finished_at = self.clock()
        message = str(error) or error.__class__.__name__

        next_poll_at = None
        if self.error_backoff:
            failures = state.consecutive_failures + 1
            multiplier = min(2 ** (failures - 1), self.max_backoff_multiplier)
            next_poll_at = format_timestamp(
                add_minutes(finished_at, state.polling_interval_minutes * multiplier))

        logger.error(f"Poll of collection {state.collection_id} failed: {message}")
        self.db.record_poll_failure(state.id, message, next_poll_at)
        self.db.insert_sync_job(state.id, format_timestamp(started_at),
                                format_timestamp(finished_at), 'error', error=message)
