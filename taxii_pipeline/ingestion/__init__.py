"""TAXII transport, collection polling and STIX bundle parsing."""

from taxii_pipeline.ingestion.poller import TAXIICollectionPoller
from taxii_pipeline.ingestion.stix_parser import STIXBundleParser
from taxii_pipeline.ingestion.taxii_client import TAXIIClient, normalize_objects_response

__all__ = ['TAXIIClient', 'TAXIICollectionPoller', 'STIXBundleParser', 'normalize_objects_response']
