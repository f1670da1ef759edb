"""
TAXII 2.1 Ingestion Pipeline

Polls TAXII 2.1 servers on a schedule, stores STIX 2.1 objects and
relationships, and extracts deduplicated, scored indicators of compromise
from indicator patterns.
"""

__version__ = "1.1.0"
