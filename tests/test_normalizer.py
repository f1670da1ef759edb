"""Tests for IOC normalization, severity scoring and merging."""

import threading

import pytest

from taxii_pipeline.models import Observable
from taxii_pipeline.normalization import IOCNormalizer, determine_severity
from taxii_pipeline.normalization.normalizer import normalize_confidence

from conftest import make_indicator


@pytest.mark.parametrize('labels, confidence, expected', [
    (['malicious-activity'], 10, 'critical'),
    (['Critical'], 10, 'critical'),
    (['high-risk'], 10, 'high'),
    (['malicious'], 85, 'high'),
    (['malicious'], 60, 'medium'),
    (['suspicious'], 95, 'medium'),
    (['medium'], 95, 'medium'),
    (['benign'], 95, 'low'),
    ([], 80, 'high'),
    ([], 50, 'medium'),
    ([], 49, 'low'),
])
def test_determine_severity(labels, confidence, expected):
    assert determine_severity(labels, confidence) == expected


@pytest.mark.parametrize('value, expected', [
    (None, 50),
    (75, 75),
    (150, 100),
    (-5, 0),
    ('80', 80),
    ('high', 50),
    (True, 50),
])
def test_normalize_confidence(value, expected):
    assert normalize_confidence(value) == expected


class TestIOCNormalizer:
    @pytest.fixture
    def normalizer(self, db):
        return IOCNormalizer(db)

    @pytest.mark.parametrize('ioc_type, value, expected', [
        ('file_hash', ' ABC123 ', 'abc123'),
        ('domain', 'Evil.Example.', 'evil.example'),
        ('email', 'Bad@Evil.Example', 'bad@evil.example'),
        ('url', 'http://evil.example/', 'http://evil.example'),
        ('ip', ' 1.2.3.4 ', '1.2.3.4'),
    ])
    def test_normalize_value(self, normalizer, ioc_type, value, expected):
        assert normalizer.normalize_value(value, ioc_type) == expected

    def test_new_ioc(self, normalizer, db):
        indicator = make_indicator(
            labels=['malicious-activity'], confidence=90,
            valid_from='2024-01-02T00:00:00Z', modified='2024-01-03T00:00:00Z')

        normalizer.upsert(Observable('file_hash', 'ABC123'), indicator)

        ioc = db.get_ioc('file_hash', 'abc123')
        assert ioc is not None
        assert ioc.confidence == 90
        assert ioc.severity == 'critical'
        assert ioc.first_seen == '2024-01-02T00:00:00.000000Z'
        assert ioc.last_seen == '2024-01-03T00:00:00.000000Z'
        assert ioc.tags == ['malicious-activity']
        assert ioc.source == 'stix'
        assert ioc.source_stix_id == indicator['id']
        assert ioc.false_positive is False

    def test_first_seen_falls_back_to_created(self, normalizer, db):
        indicator = make_indicator(valid_from=None, created='2023-12-31T00:00:00Z')
        normalizer.upsert(Observable('ip', '1.2.3.4'), indicator)
        assert db.get_ioc('ip', '1.2.3.4').first_seen == '2023-12-31T00:00:00.000000Z'

    def test_missing_confidence_defaults_to_fifty(self, normalizer, db):
        indicator = make_indicator(confidence=None, labels=[])
        normalizer.upsert(Observable('ip', '1.2.3.4'), indicator)
        ioc = db.get_ioc('ip', '1.2.3.4')
        assert ioc.confidence == 50
        assert ioc.severity == 'medium'

    def test_resighting_merges(self, normalizer, db):
        first = make_indicator(
            id='indicator--00000000-0000-4000-8000-000000000001',
            labels=['suspicious'], confidence=60,
            valid_from='2024-01-05T00:00:00Z', modified='2024-01-05T00:00:00Z')
        second = make_indicator(
            id='indicator--00000000-0000-4000-8000-000000000002',
            labels=['malicious-activity'], confidence=90,
            valid_from='2024-01-01T00:00:00Z', modified='2024-01-10T00:00:00Z')
        third = make_indicator(
            id='indicator--00000000-0000-4000-8000-000000000003',
            labels=['suspicious'], confidence=20,
            valid_from='2024-01-07T00:00:00Z', modified='2024-01-07T00:00:00Z')

        for indicator in (first, second, third):
            normalizer.upsert(Observable('domain', 'evil.example'), indicator)

        assert db.count_iocs() == 1
        ioc = db.get_ioc('domain', 'evil.example')
        assert ioc.confidence == 90
        assert ioc.tags == ['suspicious', 'malicious-activity']
        assert ioc.severity == 'critical'
        assert ioc.first_seen == '2024-01-01T00:00:00.000000Z'
        assert ioc.last_seen == '2024-01-10T00:00:00.000000Z'
        assert ioc.source_stix_id == third['id']

    def test_same_value_different_type_is_distinct(self, normalizer, db):
        indicator = make_indicator()
        normalizer.upsert(Observable('domain', 'evil.example'), indicator)
        normalizer.upsert(Observable('url', 'evil.example'), indicator)
        assert db.count_iocs() == 2

    def test_false_positive_is_sticky(self, normalizer, db):
        indicator = make_indicator()
        normalizer.upsert(Observable('ip', '1.2.3.4'), indicator)

        assert normalizer.mark_false_positive('ip', '1.2.3.4') is True
        normalizer.upsert(Observable('ip', '1.2.3.4'), make_indicator(confidence=100))

        ioc = db.get_ioc('ip', '1.2.3.4')
        assert ioc.false_positive is True
        assert ioc.confidence == 100

    def test_clear_false_positive(self, normalizer, db):
        normalizer.upsert(Observable('ip', '1.2.3.4'), make_indicator())
        normalizer.mark_false_positive('ip', '1.2.3.4')
        normalizer.mark_false_positive('ip', '1.2.3.4', flag=False)
        assert db.get_ioc('ip', '1.2.3.4').false_positive is False

    def test_mark_unknown_ioc(self, normalizer):
        assert normalizer.mark_false_positive('ip', '9.9.9.9') is False

    def test_empty_value_rejected(self, normalizer):
        with pytest.raises(ValueError):
            normalizer.upsert(Observable('ip', '   '), make_indicator())

    def test_context_tags_added_without_affecting_severity(self, normalizer, db):
        indicator = make_indicator(labels=['suspicious'], confidence=40)

        ioc = normalizer.upsert(Observable('ip', '203.0.113.7'), indicator,
                                ['malware:Critical Mass', 'actor:High Roller'])

        assert ioc.tags == ['suspicious', 'malware:Critical Mass', 'actor:High Roller']
        assert ioc.severity == 'medium'
        assert db.get_ioc('ip', '203.0.113.7').severity == 'medium'

    def test_concurrent_resightings_keep_every_tag(self, normalizer, db):
        indicators = [make_indicator(labels=[f'campaign-{i}']) for i in range(8)]
        barrier = threading.Barrier(len(indicators))

        def sight(indicator):
            barrier.wait()
            normalizer.upsert(Observable('ip', '203.0.113.7'), indicator)

        threads = [threading.Thread(target=sight, args=(indicator,)) for indicator in indicators]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        tags = db.get_ioc('ip', '203.0.113.7').tags
        assert sorted(tags) == sorted(f'campaign-{i}' for i in range(8))
