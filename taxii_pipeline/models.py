"""Records passed between the poller, parser, normalizer and storage."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

AUTH_TYPES = ('none', 'basic', 'api_key')
SEVERITIES = ('low', 'medium', 'high', 'critical')


@dataclass
class TAXIIServer:
    """A configured TAXII 2.1 server."""
    name: str
    url: str
    api_root: Optional[str] = None
    auth_type: str = 'none'
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    verify_ssl: bool = True
    is_active: bool = True
    id: Optional[int] = None

    @classmethod
    def from_config(cls, entry: Dict[str, Any]) -> 'TAXIIServer':
        """Build a server from a `taxii_servers` entry in the YAML config."""
        auth_type = entry.get('auth_type', 'none')
        if auth_type not in AUTH_TYPES:
            raise ValueError(f"Unsupported auth_type '{auth_type}' for server {entry.get('name')}")
        return cls(
            name=entry['name'],
            url=entry['url'],
            api_root=entry.get('api_root'),
            auth_type=auth_type,
            username=entry.get('username'),
            password=entry.get('password'),
            api_key=entry.get('api_key'),
            verify_ssl=entry.get('verify_ssl', True),
            is_active=entry.get('enabled', True),
        )


@dataclass
class TAXIICollectionState:
    """Polling state for one collection on one server."""
    server_id: int
    collection_id: str
    title: str
    description: Optional[str] = None
    can_read: bool = True
    can_write: bool = False
    media_types: List[str] = field(default_factory=list)
    is_polling_enabled: bool = True
    polling_interval_minutes: int = 60
    last_poll_at: Optional[str] = None
    next_poll_at: Optional[str] = None
    last_poll_status: str = 'never'
    last_poll_error: Optional[str] = None
    objects_count: int = 0
    consecutive_failures: int = 0
    id: Optional[int] = None


@dataclass
class StixObjectRecord:
    stix_id: str
    type: str
    name: str
    description: str = ''
    spec_version: str = '2.1'
    created: Optional[str] = None
    modified: Optional[str] = None
    created_by_ref: Optional[str] = None
    revoked: bool = False
    labels: List[str] = field(default_factory=list)
    confidence: Optional[int] = None
    tlp_marking: Optional[str] = None
    external_refs: List[Dict[str, Any]] = field(default_factory=list)
    pattern: Optional[str] = None
    pattern_type: Optional[str] = None
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    kill_chain_phases: List[Dict[str, Any]] = field(default_factory=list)
    search_text: str = ''
    source_bundle_id: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RelationshipRecord:
    stix_id: str
    relationship_type: str
    source_ref: str
    target_ref: str
    description: Optional[str] = None
    created: Optional[str] = None
    modified: Optional[str] = None
    source_bundle_id: Optional[str] = None


@dataclass(frozen=True)
class Observable:
    """A typed value pulled out of an indicator pattern."""
    type: str
    value: str


@dataclass
class IOC:
    type: str
    value: str
    confidence: int
    severity: str
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    valid_until: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    source: str = 'stix'
    source_stix_id: Optional[str] = None
    false_positive: bool = False

    @property
    def key(self):
        return (self.type, self.value)


@dataclass
class STIXBundle:
    """Canonical in-memory bundle handed to the parser."""
    id: str
    objects: List[Any]
    spec_version: str = '2.1'
    type: str = 'bundle'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'id': self.id,
            'spec_version': self.spec_version,
            'objects': self.objects,
        }


@dataclass
class EnvelopeResponse:
    """TAXII envelope: `{"objects": [...], "more": ..., "next": ...}`."""
    objects: List[Any]
    more: bool = False
    next: Optional[str] = None
    date_added_last: Optional[str] = None
    kind: str = 'envelope'

    def to_bundle(self) -> STIXBundle:
        return STIXBundle(id=f"bundle--{uuid.uuid4()}", objects=self.objects)


@dataclass
class BundleResponse:
    """A raw STIX bundle returned where an envelope was expected."""
    bundle: STIXBundle
    kind: str = 'bundle'

    def to_bundle(self) -> STIXBundle:
        return self.bundle


ObjectsResponse = Union[EnvelopeResponse, BundleResponse]


@dataclass
class ParseResult:
    bundle_id: str
    objects_stored: int = 0
    relationships_stored: int = 0
    iocs_extracted: int = 0


@dataclass
class PollResult:
    collection_id: int
    objects_fetched: int = 0
    relationships_stored: int = 0
    iocs_extracted: int = 0
    next_poll_at: Optional[str] = None
    has_more: bool = False


@dataclass
class SweepSummary:
    """What one scheduler sweep did."""
    collections_polled: int = 0
    total_objects_fetched: int = 0
    total_iocs_extracted: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collectionsPolled': self.collections_polled,
            'totalObjectsFetched': self.total_objects_fetched,
            'totalIOCsExtracted': self.total_iocs_extracted,
            'errors': list(self.errors),
        }
