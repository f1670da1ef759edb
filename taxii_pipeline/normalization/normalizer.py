"""Normalization module for deduplicating and scoring extracted IOCs."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from taxii_pipeline.models import IOC, Observable
from taxii_pipeline.utils import earlier_of, later_of, normalize_timestamp

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 50
CONTEXT_TAG_PREFIXES = ('malware:', 'actor:')


def determine_severity(labels: Iterable[str], confidence: int) -> str:
    """
    Map indicator labels and confidence to a severity.

    Label keywords are checked first, in descending order of severity;
    confidence alone decides when no keyword matches.
    """
    label_str = ' '.join(str(label) for label in labels).lower()

    if 'critical' in label_str or 'malicious-activity' in label_str:
        return 'critical'
    if 'high' in label_str or ('malicious' in label_str and confidence >= 80):
        return 'high'
    if 'medium' in label_str or 'suspicious' in label_str:
        return 'medium'
    if 'low' in label_str or 'benign' in label_str:
        return 'low'

    if confidence >= 80:
        return 'high'
    if confidence >= 50:
        return 'medium'
    return 'low'


def normalize_confidence(value: Any) -> int:
    """Clamp a STIX confidence to 0-100, defaulting when absent or invalid."""
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        return max(0, min(100, int(value)))
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE


def _merge_tags(existing: List[str], new: List[str]) -> List[str]:
    merged = list(existing)
    for tag in new:
        if tag not in merged:
            merged.append(tag)
    return merged


def label_tags(tags: Iterable[str]) -> List[str]:
    """Tags that came from indicator labels, without relationship context tags."""
    return [tag for tag in tags if not tag.startswith(CONTEXT_TAG_PREFIXES)]


class IOCNormalizer:
    """Turns pattern observables into deduplicated, scored IOC rows."""

    def __init__(self, db):
        """
        Args:
            db: Store providing merge_ioc/set_false_positive
        """
        self.db = db

    def normalize_value(self, value: str, ioc_type: str) -> str:
        """
        Normalize IOC value based on type.

        Args:
            value: IOC value
            ioc_type: Type of IOC

        Returns:
            Normalized value
        """
        if not value:
            return value

        value = value.strip()

        if ioc_type in ('file_hash', 'email'):
            value = value.lower()
        elif ioc_type == 'domain':
            value = value.lower().rstrip('.')
        elif ioc_type == 'url':
            value = value.rstrip('/') or value

        return value

    def build(self, observable: Observable, indicator: Dict[str, Any],
              context_tags: Iterable[str] = ()) -> IOC:
        """
        Build a fresh IOC from one observable of one indicator.

        context_tags (`malware:<name>`, `actor:<name>`) are added to the
        labels but never affect severity.
        """
        labels = [str(label) for label in indicator.get('labels') or []]
        confidence = normalize_confidence(indicator.get('confidence'))
        modified = normalize_timestamp(indicator.get('modified'))
        first_seen = normalize_timestamp(
            indicator.get('valid_from') or indicator.get('created') or indicator.get('modified'))

        return IOC(
            type=observable.type,
            value=self.normalize_value(observable.value, observable.type),
            confidence=confidence,
            severity=determine_severity(labels, confidence),
            first_seen=first_seen,
            last_seen=modified or first_seen,
            valid_until=normalize_timestamp(indicator.get('valid_until')),
            tags=_merge_tags(labels, context_tags),
            description=indicator.get('description') or indicator.get('name') or None,
            source_stix_id=indicator.get('id'),
        )

    def merge(self, existing: IOC, incoming: IOC) -> IOC:
        """
        Merge a re-sighted IOC into the stored one.

        Confidence is the maximum of both, seen-range is widened, tags are
        unioned and severity is recomputed from the merged values. The
        false_positive flag of the stored row is preserved.
        """
        confidence = max(existing.confidence, incoming.confidence)
        tags = _merge_tags(existing.tags, incoming.tags)
        return IOC(
            type=existing.type,
            value=existing.value,
            confidence=confidence,
            severity=determine_severity(label_tags(tags), confidence),
            first_seen=earlier_of(existing.first_seen, incoming.first_seen),
            last_seen=later_of(existing.last_seen, incoming.last_seen),
            valid_until=later_of(existing.valid_until, incoming.valid_until),
            tags=tags,
            description=incoming.description or existing.description,
            source=incoming.source,
            source_stix_id=incoming.source_stix_id or existing.source_stix_id,
            false_positive=existing.false_positive,
        )

    def upsert(self, observable: Observable, indicator: Dict[str, Any],
               context_tags: Iterable[str] = ()) -> IOC:
        """
        Create or update the IOC for an observable.

        The stored row is read and merged under the store's write lock.

        Args:
            observable: Candidate extracted from the indicator pattern
            indicator: The STIX indicator it came from
            context_tags: Malware and actor tags from related objects

        Returns:
            The IOC as written
        """
        incoming = self.build(observable, indicator, context_tags)
        if not incoming.value:
            raise ValueError(f"Empty {observable.type} value in {indicator.get('id')}")

        ioc = self.db.merge_ioc(incoming, self.merge)
        logger.debug(f"Upserted IOC {ioc.type}:{ioc.value} ({ioc.severity}, {ioc.confidence})")
        return ioc

    def mark_false_positive(self, ioc_type: str, value: str, flag: bool = True) -> bool:
        """Operator-only action; automated upserts never reset the flag."""
        value = self.normalize_value(value, ioc_type)
        updated = self.db.set_false_positive(ioc_type, value, flag)
        if updated:
            logger.info(f"IOC {ioc_type}:{value} false_positive={flag}")
        else:
            logger.warning(f"IOC {ioc_type}:{value} not found")
        return updated
