"""Tests for STIX bundle parsing and storage."""

from unittest.mock import patch

import pytest
from stix2 import TLP_AMBER, TLP_WHITE

from taxii_pipeline.errors import ObjectStoreError, ParseError
from taxii_pipeline.ingestion.stix_parser import (build_context_tags, build_search_text,
                                                  extract_tlp_marking)
from taxii_pipeline.models import STIXBundle

from conftest import make_bundle, make_indicator, make_malware, make_relationship


class TestParseBundle:
    def test_end_to_end_sha256_indicator(self, parser, db):
        indicator = make_indicator("[file:hashes.'SHA-256' = 'ABC123']",
                                   labels=['malicious-activity'], confidence=90)
        bundle = make_bundle(indicator, make_relationship())

        result = parser.parse_bundle(bundle)

        assert result.objects_stored == 1
        assert result.relationships_stored == 1
        assert result.iocs_extracted == 1

        ioc = db.get_ioc('file_hash', 'abc123')
        assert ioc.severity == 'critical'
        assert ioc.confidence == 90

    def test_objects_and_relationships_stored(self, parser, db):
        result = parser.parse_bundle(make_bundle(make_indicator(), make_malware(), make_relationship()))

        assert result.bundle_id == 'bundle--5d0092c5-5f74-4287-9642-33f4c354e56d'
        assert result.objects_stored == 2
        assert result.relationships_stored == 1

        malware = db.get_stix_object('malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b')
        assert malware['name'] == 'Poison Ivy'
        assert malware['raw_data']['is_family'] is True
        relationship = db.get_relationship('relationship--44298a74-ba52-4f0c-87a3-1824e67d7fad')
        assert relationship['relationship_type'] == 'indicates'

    def test_reingestion_is_idempotent(self, parser, db):
        bundle = make_bundle(make_indicator(), make_malware(), make_relationship())

        parser.parse_bundle(bundle)
        parser.parse_bundle(bundle)

        assert db.count_stix_objects() == 2
        assert db.count_relationships() == 1
        assert db.count_iocs() == 1

    def test_newer_modified_wins(self, parser, db):
        parser.parse_bundle(make_bundle(make_malware(name='Old', modified='2024-01-01T00:00:00Z')))
        parser.parse_bundle(make_bundle(make_malware(name='New', modified='2024-02-01T00:00:00Z')))
        parser.parse_bundle(make_bundle(make_malware(name='Stale', modified='2023-06-01T00:00:00Z')))

        stored = db.get_stix_object('malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b')
        assert stored['name'] == 'New'
        assert stored['modified'] == '2024-02-01T00:00:00.000000Z'

    def test_name_falls_back_to_id_and_is_truncated(self, parser, db):
        parser.parse_bundle(make_bundle(
            {'type': 'identity', 'id': 'identity--1', 'created': '2024-01-01T00:00:00Z'},
            make_malware(name='x' * 400, description='d' * 2000),
        ))

        assert db.get_stix_object('identity--1')['name'] == 'identity--1'
        malware = db.get_stix_object('malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b')
        assert len(malware['name']) == 255
        assert len(malware['description']) == 1000
        assert len(malware['search_text']) <= 5000

    def test_malformed_entries_skipped(self, parser, db):
        bundle = make_bundle('not-an-object', {'type': 'indicator'}, {'id': 'x--1'}, make_malware())

        result = parser.parse_bundle(bundle)

        assert result.objects_stored == 1
        assert db.count_stix_objects() == 1

    def test_one_bad_object_does_not_abort_bundle(self, parser, db):
        bad_relationship = make_relationship(id='relationship--bad')
        del bad_relationship['source_ref']
        bundle = make_bundle(bad_relationship, make_malware(), make_relationship())

        result = parser.parse_bundle(bundle)

        assert result.objects_stored == 1
        assert result.relationships_stored == 1
        assert db.get_relationship('relationship--bad') is None

    def test_store_failure_is_isolated(self, parser, db):
        bundle = make_bundle(make_malware(), make_indicator())
        original = db.upsert_stix_object
        calls = []

        def flaky(record):
            calls.append(record.stix_id)
            if record.type == 'malware':
                raise ObjectStoreError('disk full', key=record.stix_id)
            return original(record)

        with patch.object(db, 'upsert_stix_object', side_effect=flaky):
            result = parser.parse_bundle(bundle)

        assert len(calls) == 2
        assert result.objects_stored == 1
        assert result.iocs_extracted == 1

    def test_ioc_failure_is_isolated(self, parser, db):
        pattern = "[ipv4-addr:value = '1.2.3.4'] OR [domain-name:value = 'evil.example']"
        original = db.merge_ioc

        def flaky(ioc, merge):
            if ioc.type == 'ip':
                raise ObjectStoreError('locked')
            return original(ioc, merge)

        with patch.object(db, 'merge_ioc', side_effect=flaky):
            result = parser.parse_bundle(make_bundle(make_indicator(pattern)))

        assert result.objects_stored == 1
        assert result.iocs_extracted == 1
        assert db.get_ioc('domain', 'evil.example') is not None

    def test_accepts_canonical_bundle(self, parser, db):
        bundle = STIXBundle(id='bundle--abc', objects=[make_malware()])
        result = parser.parse_bundle(bundle, source_server_id=7)
        assert result.bundle_id == 'bundle--abc'
        assert result.objects_stored == 1

    def test_bundle_without_id_gets_one(self, parser):
        result = parser.parse_bundle({'type': 'bundle', 'objects': [make_malware()]})
        assert result.bundle_id.startswith('bundle--')

    def test_audit_row_completed(self, parser, db):
        parser.parse_bundle(make_bundle(make_malware(), make_relationship()), source_server_id=3)

        with db._connect() as conn:
            row = conn.execute("SELECT * FROM stix_bundles").fetchone()
        assert row['processing_status'] == 'completed'
        assert row['object_count'] == 2
        assert row['relationship_count'] == 1
        assert row['objects_stored'] == 1
        assert row['relationships_stored'] == 1
        assert row['source_server_id'] == 3

    @pytest.mark.parametrize('bundle', [
        None,
        ['not', 'a', 'bundle'],
        {'type': 'bundle', 'id': 'bundle--1', 'objects': 'nope'},
        {'type': 'bundle', 'id': 'bundle--1'},
        {'type': 'indicator', 'id': 'indicator--1', 'objects': []},
    ])
    def test_malformed_bundle_raises(self, parser, db, bundle):
        with pytest.raises(ParseError):
            parser.parse_bundle(bundle)
        assert db.get_statistics()['total_bundles'] == 0

    def test_get_statistics(self, parser):
        parser.parse_bundle(make_bundle(make_indicator(), make_malware(), make_relationship()))

        stats = parser.get_statistics()

        assert stats['total_objects'] == 2
        assert stats['total_bundles'] == 1
        assert stats['total_iocs'] == 1
        assert stats['objects_by_type'] == {'indicator': 1, 'malware': 1}


INTRUSION_SET = {
    'type': 'intrusion-set',
    'spec_version': '2.1',
    'id': 'intrusion-set--4e78f46f-a023-4e5f-bc24-71b3ca22ec29',
    'created': '2024-01-01T00:00:00.000Z',
    'modified': '2024-01-01T00:00:00.000Z',
    'name': 'APT Example',
}


class TestContextTags:
    def test_malware_and_actor_tags(self, parser, db):
        parser.parse_bundle(make_bundle(
            make_indicator(),
            make_malware(),
            INTRUSION_SET,
            make_relationship(),
            make_relationship(id='relationship--00000000-0000-4000-8000-000000000002',
                              relationship_type='attributed-to',
                              target_ref=INTRUSION_SET['id']),
        ))

        ioc = db.get_ioc('ip', '203.0.113.7')
        assert ioc.tags == ['malicious-activity', 'malware:Poison Ivy', 'actor:APT Example']

    def test_relationship_types_that_carry_context(self):
        objects = [
            make_malware(),
            INTRUSION_SET,
            make_relationship(relationship_type='related-to'),
            make_relationship(relationship_type='uses'),
            make_relationship(relationship_type='related-to', target_ref=INTRUSION_SET['id']),
        ]
        assert build_context_tags(objects) == {
            'indicator--8e2e2d2b-17d4-4cbf-938f-98ee46b3cd3f': ['malware:Poison Ivy'],
        }

    def test_dangling_target_adds_no_tag(self, parser, db):
        result = parser.parse_bundle(make_bundle(make_indicator(), make_relationship()))

        assert result.relationships_stored == 1
        assert db.get_ioc('ip', '203.0.113.7').tags == ['malicious-activity']

    def test_context_names_do_not_change_severity(self, parser, db):
        indicator = make_indicator(labels=['benign'], confidence=90)
        parser.parse_bundle(make_bundle(indicator, make_malware(name='Highlander Critical'),
                                        make_relationship()))

        ioc = db.get_ioc('ip', '203.0.113.7')
        assert 'malware:Highlander Critical' in ioc.tags
        assert ioc.severity == 'low'

        parser.parse_bundle(make_bundle(indicator))
        assert db.get_ioc('ip', '203.0.113.7').severity == 'low'


class TestTLPMarking:
    def test_well_known_marking_definition(self):
        assert extract_tlp_marking({'object_marking_refs': [TLP_AMBER.id]}) == 'AMBER'
        assert extract_tlp_marking({'object_marking_refs': [TLP_WHITE.id]}) == 'WHITE'

    @pytest.mark.parametrize('marking, expected', [
        ('marking-definition--tlp-green', 'GREEN'),
        ('marking-definition--TLP-RED', 'RED'),
        ('marking-definition--tlp:clear', 'WHITE'),
    ])
    def test_substring_marking(self, marking, expected):
        assert extract_tlp_marking({'object_marking_refs': [marking]}) == expected

    def test_falls_back_to_labels(self):
        assert extract_tlp_marking({'labels': ['malicious-activity', 'TLP:GREEN']}) == 'GREEN'

    def test_no_marking(self):
        assert extract_tlp_marking({'labels': ['malicious-activity']}) is None

    def test_stored_on_object(self, parser, db):
        parser.parse_bundle(make_bundle(make_malware(object_marking_refs=[TLP_AMBER.id])))
        stored = db.get_stix_object('malware--31b940d4-6f7f-459a-80ea-9c1f17b5891b')
        assert stored['tlp_marking'] == 'AMBER'


def test_search_text_combines_fields():
    text = build_search_text(make_indicator("[ipv4-addr:value = '1.2.3.4']",
                                            name='Bad IP', description='C2 server'))
    assert text == "Bad IP C2 server malicious-activity [ipv4-addr:value = '1.2.3.4']"


def test_search_text_is_bounded():
    assert len(build_search_text({'name': 'n' * 3000, 'description': 'd' * 3000})) == 5000
