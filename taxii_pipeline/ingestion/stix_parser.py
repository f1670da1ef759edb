"""STIX 2.1 bundle parsing and persistence."""

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from stix2 import TLP_AMBER, TLP_GREEN, TLP_RED, TLP_WHITE

from taxii_pipeline.errors import ParseError
from taxii_pipeline.models import ParseResult, RelationshipRecord, STIXBundle, StixObjectRecord
from taxii_pipeline.normalization import IOCNormalizer, PatternEvaluator
from taxii_pipeline.utils import normalize_timestamp

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1000
MAX_SEARCH_TEXT_LENGTH = 5000

TLP_MARKING_IDS = {
    TLP_WHITE.id: 'WHITE',
    TLP_GREEN.id: 'GREEN',
    TLP_AMBER.id: 'AMBER',
    TLP_RED.id: 'RED',
}

# target type -> (tag prefix, relationship types that carry it)
CONTEXT_TARGETS = {
    'malware': ('malware', ('indicates', 'related-to')),
    'intrusion-set': ('actor', ('indicates', 'attributed-to')),
}


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _timestamp(value: Any) -> Optional[str]:
    """Normalize a timestamp, keeping the raw text if it will not parse."""
    try:
        return normalize_timestamp(value)
    except (TypeError, ValueError):
        logger.debug(f"Keeping unparseable timestamp {value!r}")
        return str(value)


def extract_tlp_marking(obj: Dict[str, Any]) -> Optional[str]:
    """
    Derive a TLP colour from object_marking_refs, falling back to labels.

    Returns:
        'WHITE', 'GREEN', 'AMBER', 'RED' or None
    """
    markings = [m for m in _as_list(obj.get('object_marking_refs')) if isinstance(m, str)]

    for marking in markings:
        if marking in TLP_MARKING_IDS:
            return TLP_MARKING_IDS[marking]

    for marking in markings:
        lower = marking.lower()
        if 'white' in lower or 'tlp:clear' in lower:
            return 'WHITE'
        if 'green' in lower:
            return 'GREEN'
        if 'amber' in lower:
            return 'AMBER'
        if 'red' in lower:
            return 'RED'

    for label in _as_list(obj.get('labels')):
        lower = str(label).lower()
        if 'tlp:white' in lower or 'tlp:clear' in lower:
            return 'WHITE'
        if 'tlp:green' in lower:
            return 'GREEN'
        if 'tlp:amber' in lower:
            return 'AMBER'
        if 'tlp:red' in lower:
            return 'RED'

    return None


def build_search_text(obj: Dict[str, Any]) -> str:
    parts = []
    if obj.get('name'):
        parts.append(str(obj['name']))
    if obj.get('description'):
        parts.append(str(obj['description']))
    labels = _as_list(obj.get('labels'))
    if labels:
        parts.append(' '.join(str(label) for label in labels))
    if obj.get('pattern'):
        parts.append(str(obj['pattern']))
    return ' '.join(parts)[:MAX_SEARCH_TEXT_LENGTH]


def build_object_record(obj: Dict[str, Any], bundle_id: Optional[str] = None) -> StixObjectRecord:
    """Extract the common STIX fields eagerly and keep the payload verbatim."""
    confidence = obj.get('confidence')
    if confidence is not None:
        confidence = max(0, min(100, int(confidence)))

    return StixObjectRecord(
        stix_id=obj['id'],
        type=obj['type'],
        name=str(obj.get('name') or obj['id'])[:MAX_NAME_LENGTH],
        description=str(obj.get('description') or '')[:MAX_DESCRIPTION_LENGTH],
        spec_version=obj.get('spec_version', '2.1'),
        created=_timestamp(obj.get('created')),
        modified=_timestamp(obj.get('modified') or obj.get('created')),
        created_by_ref=obj.get('created_by_ref'),
        revoked=bool(obj.get('revoked', False)),
        labels=[str(label) for label in _as_list(obj.get('labels'))],
        confidence=confidence,
        tlp_marking=extract_tlp_marking(obj),
        external_refs=_as_list(obj.get('external_references')),
        pattern=obj.get('pattern'),
        pattern_type=obj.get('pattern_type'),
        valid_from=_timestamp(obj.get('valid_from')),
        valid_until=_timestamp(obj.get('valid_until')),
        kill_chain_phases=_as_list(obj.get('kill_chain_phases')),
        search_text=build_search_text(obj),
        source_bundle_id=bundle_id,
        raw_data=obj,
    )


def build_context_tags(objects: List[Any]) -> Dict[str, List[str]]:
    """
    Map source ids to `malware:<name>` and `actor:<name>` tags.

    Only relationships whose target malware or intrusion set is in the same
    bundle contribute; dangling targets are ignored.
    """
    targets = {
        obj['id']: obj for obj in objects
        if isinstance(obj, dict) and obj.get('type') in CONTEXT_TARGETS
        and obj.get('id') and obj.get('name')
    }

    tags: Dict[str, List[str]] = {}
    for obj in objects:
        if not isinstance(obj, dict) or obj.get('type') != 'relationship':
            continue
        target = targets.get(obj.get('target_ref'))
        if target is None:
            continue
        prefix, relationship_types = CONTEXT_TARGETS[target['type']]
        if obj.get('relationship_type') not in relationship_types:
            continue
        tag = f"{prefix}:{target['name']}"
        source_tags = tags.setdefault(obj.get('source_ref'), [])
        if tag not in source_tags:
            source_tags.append(tag)
    return tags


def build_relationship_record(obj: Dict[str, Any], bundle_id: Optional[str] = None) -> RelationshipRecord:
    return RelationshipRecord(
        stix_id=obj['id'],
        relationship_type=obj['relationship_type'],
        source_ref=obj['source_ref'],
        target_ref=obj['target_ref'],
        description=obj.get('description'),
        created=_timestamp(obj.get('created')),
        modified=_timestamp(obj.get('modified') or obj.get('created')),
        source_bundle_id=bundle_id,
    )


class STIXBundleParser:
    """Parses STIX bundles and stores objects, relationships and IOCs."""

    def __init__(self, db,
                 evaluator: Optional[PatternEvaluator] = None,
                 normalizer: Optional[IOCNormalizer] = None):
        """
        Args:
            db: ThreatIntelDB (or any store with the same upsert methods)
            evaluator: Pattern evaluator, a default one if omitted
            normalizer: IOC normalizer, one bound to `db` if omitted
        """
        self.db = db
        self.evaluator = evaluator or PatternEvaluator()
        self.normalizer = normalizer or IOCNormalizer(db)

    def parse_bundle(self, bundle: Union[STIXBundle, Dict[str, Any]],
                     source_server_id: Optional[int] = None) -> ParseResult:
        """
        Parse and store a STIX bundle.

        Args:
            bundle: Canonical bundle or a bundle dictionary
            source_server_id: TAXII server the bundle was fetched from

        Returns:
            Counts of what was stored

        Raises:
            ParseError: If the bundle itself is malformed
        """
        if isinstance(bundle, STIXBundle):
            bundle = bundle.to_dict()
        if not isinstance(bundle, dict):
            raise ParseError(f"Expected a STIX bundle object, got {type(bundle).__name__}")
        if bundle.get('type', 'bundle') != 'bundle':
            raise ParseError(f"Expected type 'bundle', got '{bundle.get('type')}'")
        objects = bundle.get('objects')
        if not isinstance(objects, list):
            raise ParseError("Bundle 'objects' must be a list")

        if not bundle.get('id'):
            bundle = dict(bundle, id=f"bundle--{uuid.uuid4()}")
        bundle_id = bundle['id']
        bundle_row_id = self.db.insert_bundle(bundle, source_server_id)
        result = ParseResult(bundle_id=bundle_id)
        context_tags = build_context_tags(objects)

        for obj in objects:
            if not isinstance(obj, dict) or not obj.get('type') or not obj.get('id'):
                logger.warning(f"Skipping malformed STIX object in {bundle_id}: {str(obj)[:100]}")
                continue

            try:
                if obj['type'] == 'relationship':
                    self.db.upsert_relationship(build_relationship_record(obj, bundle_id))
                    result.relationships_stored += 1
                else:
                    self.db.upsert_stix_object(build_object_record(obj, bundle_id))
                    result.objects_stored += 1

                    if obj['type'] == 'indicator':
                        result.iocs_extracted += self._extract_iocs(
                            obj, context_tags.get(obj['id'], []))
            except Exception as e:
                logger.error(f"Error storing STIX object {obj.get('id')}: {e}")

        self.db.complete_bundle(bundle_row_id, result.objects_stored, result.relationships_stored)

        logger.info(
            f"Bundle {bundle_id}: {result.objects_stored} objects, "
            f"{result.relationships_stored} relationships, {result.iocs_extracted} IOCs"
        )
        return result

    def _extract_iocs(self, indicator: Dict[str, Any], context_tags: List[str]) -> int:
        count = 0
        for observable in self.evaluator.extract(indicator):
            try:
                self.normalizer.upsert(observable, indicator, context_tags)
                count += 1
            except Exception as e:
                logger.error(f"Error storing IOC {observable.type}:{observable.value} "
                             f"from {indicator.get('id')}: {e}")
        return count

    def get_statistics(self) -> Dict[str, Any]:
        return self.db.get_statistics()
