"""Tests for SyncOrchestrator."""
import asyncio
import threading
from datetime import date, datetime
from unittest.mock import Mock, patch
from zoneinfo import ZoneInfo

import boto3
import pytest
import responses
from botocore.exceptions import EndpointConnectionError
from moto import mock_aws

from feed.fetcher import CalendarFetcher
from feed.parser import CalendarParser
from processor.errors import EmptyFeedError, FetchError, PersistenceError
from processor.job_reconciler import JobReconciler
from processor.models import AssignedCleaner, Property
from storage.dynamodb_manager import DynamoDBManager
from sync.orchestrator import SyncOrchestrator

UTC = ZoneInfo("UTC")
NOW = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


def _ical(*bookings):
    """Build a feed from (summary, dtstart, dtend) tuples."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//EN"]
    for index, (summary, start, end) in enumerate(bookings):
        lines.extend([
            "BEGIN:VEVENT",
            f"UID:{index}@example.com",
            f"DTSTART:{start}",
            f"DTEND:{end}",
            f"SUMMARY:{summary}",
            "END:VEVENT",
        ])
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


FEED = _ical(
    ("Booking A", "20240110T140000Z", "20240112T110000Z"),
    ("Booking B", "20240112T150000Z", "20240115T110000Z"),
    ("Blocked", "20240116T000000Z", "20240120T000000Z"),
    ("Booking C", "20240301T150000Z", "20240305T110000Z"),
)


class FakePersistence:
    """In-memory stand-in for DynamoDBManager."""

    def __init__(self, properties, cleaners=None):
        self.properties = properties
        self.cleaners = cleaners or {}
        self.jobs = {}
        self.synced = {}
        self.sync_errors = {}
        self.failing_days = set()
        self.active_counts = {}

    def list_active_properties(self):
        return list(self.properties)

    def list_existing_job_keys(self, property_id):
        return {day for (pid, day) in self.jobs if pid == property_id}

    def count_active_jobs(self, property_id, today):
        return self.active_counts.get(property_id, 0)

    def create_job(self, record):
        if record.checkout_date in self.failing_days:
            raise PersistenceError(f"Failed to create job for {record.checkout_date}")
        key = (record.property_id, record.checkout_date)
        if key in self.jobs:
            return False
        self.jobs[key] = record
        return True

    def mark_property_synced(self, property_id, timestamp):
        self.synced[property_id] = timestamp
        self.sync_errors.pop(property_id, None)

    def mark_property_sync_error(self, property_id, message):
        self.sync_errors[property_id] = message

    def get_assigned_cleaners(self, property_id):
        return self.cleaners.get(property_id, [])


def _property(index):
    return Property(
        property_id=f"prop-{index}",
        name=f"Property {index}",
        ical_url=f"https://calendar.example.com/{index}.ics",
        user_id=f"host-{index}"
    )


def _orchestrator(persistence, fetcher, **kwargs):
    kwargs.setdefault('retry_base_delay', 0)
    kwargs.setdefault('clock', lambda: NOW)
    return SyncOrchestrator(
        persistence=persistence,
        fetcher=fetcher,
        parser=CalendarParser(tz=UTC),
        reconciler=kwargs.pop('reconciler', JobReconciler(tz=UTC)),
        tz=UTC,
        **kwargs
    )


def _static_fetcher(text=FEED):
    fetcher = Mock()
    fetcher.fetch.return_value = text
    return fetcher


class TestRunSync:
    """Test cases for SyncOrchestrator.run_sync."""

    def test_creates_jobs_for_upcoming_checkouts(self):
        persistence = FakePersistence(
            [_property(1)],
            cleaners={'prop-1': [
                AssignedCleaner('backup', created_at='2023-01-01'),
                AssignedCleaner('main', is_primary=True, created_at='2023-06-01'),
            ]}
        )
        orchestrator = _orchestrator(persistence, _static_fetcher())

        summary = asyncio.run(orchestrator.run_sync())

        assert summary.attempted == 1
        assert summary.succeeded == 1
        assert summary.failed == 0
        # Booking C checks out in March, outside the 30-day window
        assert summary.jobs_created == 2
        job_a = persistence.jobs[('prop-1', date(2024, 1, 12))]
        assert job_a.is_same_day_turnaround is True
        assert job_a.checkin_date == date(2024, 1, 12)
        assert job_a.cleaner_id == 'main'
        assert job_a.status == 'pending'
        job_b = persistence.jobs[('prop-1', date(2024, 1, 15))]
        assert job_b.is_same_day_turnaround is False
        assert job_b.checkin_date == date(2024, 3, 1)
        assert persistence.synced['prop-1'] == NOW

    def test_second_run_creates_no_jobs(self):
        """Test repeated syncs against an unchanged feed are idempotent."""
        persistence = FakePersistence([_property(1)])
        orchestrator = _orchestrator(persistence, _static_fetcher())

        first = asyncio.run(orchestrator.run_sync())
        second = asyncio.run(orchestrator.run_sync())

        assert first.jobs_created == 2
        assert second.jobs_created == 0
        assert second.succeeded == 1
        assert len(persistence.jobs) == 2

    def test_existing_job_with_different_time_is_not_duplicated(self):
        persistence = FakePersistence([_property(1)])
        persistence.jobs[('prop-1', date(2024, 6, 1))] = object()
        feed = _ical(("Guest", "20240528T150000Z", "20240601T140000Z"))
        orchestrator = _orchestrator(
            persistence,
            _static_fetcher(feed),
            clock=lambda: datetime(2024, 5, 25, tzinfo=UTC)
        )

        summary = asyncio.run(orchestrator.run_sync())

        assert summary.jobs_created == 0
        assert len(persistence.jobs) == 1

    @responses.activate
    def test_failed_property_does_not_stop_others(self):
        """Test an HTTP 500 for one property leaves the others syncing."""
        properties = [_property(1), _property(2), _property(3)]
        responses.add(responses.GET, properties[0].ical_url, body=FEED, status=200)
        responses.add(responses.GET, properties[1].ical_url, body="Server Error", status=500)
        responses.add(responses.GET, properties[2].ical_url, body=FEED, status=200)
        persistence = FakePersistence(properties)
        persistence.synced['prop-2'] = 'previous'
        orchestrator = _orchestrator(persistence, CalendarFetcher(timeout=5))

        summary = asyncio.run(orchestrator.run_sync())

        assert summary.attempted == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.jobs_created == 4
        failed = summary.details[1]
        assert failed.property_id == 'prop-2'
        assert failed.success is False
        assert '500' in failed.error
        assert persistence.sync_errors['prop-2'] == failed.error
        assert persistence.synced['prop-2'] == 'previous'
        assert ('prop-1', date(2024, 1, 12)) in persistence.jobs
        assert ('prop-3', date(2024, 1, 12)) in persistence.jobs

    def test_fetch_error_retried_then_succeeds(self):
        fetcher = Mock()
        fetcher.fetch.side_effect = [FetchError(503, "Service Unavailable"), FEED]
        persistence = FakePersistence([_property(1)])

        summary = asyncio.run(_orchestrator(persistence, fetcher).run_sync())

        assert summary.succeeded == 1
        assert fetcher.fetch.call_count == 2

    def test_client_error_not_retried(self):
        fetcher = Mock()
        fetcher.fetch.side_effect = FetchError(404, "Not Found")
        persistence = FakePersistence([_property(1)])

        summary = asyncio.run(_orchestrator(persistence, fetcher).run_sync())

        assert summary.failed == 1
        assert fetcher.fetch.call_count == 1

    def test_empty_feed_reported_without_retry(self):
        fetcher = Mock()
        fetcher.fetch.side_effect = EmptyFeedError()
        persistence = FakePersistence([_property(1)])

        summary = asyncio.run(_orchestrator(persistence, fetcher).run_sync())

        assert summary.details[0].error == "Calendar feed is empty"
        assert fetcher.fetch.call_count == 1

    def test_parse_error_recorded(self):
        persistence = FakePersistence([_property(1)])

        summary = asyncio.run(_orchestrator(persistence, _static_fetcher("<html></html>")).run_sync())

        assert summary.failed == 1
        assert 'prop-1' in persistence.sync_errors

    def test_job_persistence_failure_does_not_block_siblings(self):
        persistence = FakePersistence([_property(1)])
        persistence.failing_days.add(date(2024, 1, 12))

        summary = asyncio.run(_orchestrator(persistence, _static_fetcher()).run_sync())

        result = summary.details[0]
        assert result.success is True
        assert result.jobs_created == 1
        assert ('prop-1', date(2024, 1, 15)) in persistence.jobs

    def test_unexpected_error_reported_safely(self):
        persistence = FakePersistence([_property(1)])
        persistence.get_assigned_cleaners = Mock(side_effect=KeyError('secret-value'))

        summary = asyncio.run(_orchestrator(persistence, _static_fetcher()).run_sync())

        assert summary.details[0].error == "Unexpected error (KeyError)"

    def test_timeout_keeps_completed_results(self):
        """Test slow properties are abandoned and reported as timed out."""
        release = threading.Event()

        def fetch(url):
            if url.endswith('/2.ics'):
                release.wait(5)
            return FEED

        fetcher = Mock()
        fetcher.fetch.side_effect = fetch
        persistence = FakePersistence([_property(1), _property(2), _property(3)])
        orchestrator = _orchestrator(persistence, fetcher, timeout_seconds=0.5)

        try:
            summary = asyncio.run(orchestrator.run_sync())
        finally:
            release.set()

        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.details[1].error == "Sync timed out after 0.5 seconds"
        assert persistence.sync_errors['prop-2'] == "Sync timed out after 0.5 seconds"
        assert 'prop-2' not in persistence.synced
        assert summary.details[0].jobs_created == 2

    def test_no_active_properties(self):
        summary = asyncio.run(_orchestrator(FakePersistence([]), _static_fetcher()).run_sync())

        assert summary.attempted == 0
        assert summary.details == []

    def test_listing_properties_failure_propagates(self):
        persistence = FakePersistence([])
        persistence.list_active_properties = Mock(side_effect=PersistenceError("Failed to list active properties"))

        with pytest.raises(PersistenceError):
            asyncio.run(_orchestrator(persistence, _static_fetcher()).run_sync())

    def test_job_limit_notifies_owner(self):
        persistence = FakePersistence([_property(1)])
        persistence.active_counts['prop-1'] = 4
        notifier = Mock()
        orchestrator = _orchestrator(
            persistence,
            _static_fetcher(),
            reconciler=JobReconciler(tz=UTC, max_active_jobs=5),
            notifier=notifier
        )

        summary = asyncio.run(orchestrator.run_sync())

        assert summary.jobs_created == 1
        notifier.notify.assert_called_once()
        user_id, title, body, notification_type = notifier.notify.call_args[0]
        assert user_id == 'host-1'
        assert notification_type == 'job_limit_reached'
        assert 'Property 1' in body

    def test_notification_failure_does_not_fail_sync(self):
        persistence = FakePersistence([_property(1)])
        notifier = Mock()
        notifier.notify.side_effect = RuntimeError("push service down")
        orchestrator = _orchestrator(
            persistence,
            _static_fetcher(),
            reconciler=JobReconciler(tz=UTC, max_active_jobs=0),
            notifier=notifier
        )

        summary = asyncio.run(orchestrator.run_sync())

        assert summary.succeeded == 1
        assert summary.jobs_created == 0
        notifier.notify.assert_called_once()


@pytest.fixture
def dynamodb_manager(monkeypatch):
    """DynamoDBManager backed by moto tables holding one active property."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        for name, keys in [
            ('test-properties', ['property_id']),
            ('test-jobs', ['property_id', 'checkout_date']),
            ('test-cleaners', ['property_id', 'cleaner_id']),
        ]:
            dynamodb.create_table(
                TableName=name,
                KeySchema=[
                    {'AttributeName': key, 'KeyType': key_type}
                    for key, key_type in zip(keys, ['HASH', 'RANGE'])
                ],
                AttributeDefinitions=[{'AttributeName': key, 'AttributeType': 'S'} for key in keys],
                BillingMode='PAY_PER_REQUEST'
            )
        prop = _property(1)
        dynamodb.Table('test-properties').put_item(Item={
            'property_id': prop.property_id, 'name': prop.name,
            'ical_url': prop.ical_url, 'active': True
        })
        yield DynamoDBManager('test-properties', 'test-jobs', 'test-cleaners')


class TestRunSyncWithDynamoDB:
    """Test cases running the orchestrator against DynamoDBManager."""

    def test_connection_error_on_one_job_does_not_block_siblings(self, dynamodb_manager):
        put_item = dynamodb_manager.jobs.put_item
        attempted = []

        def flaky_put_item(**kwargs):
            attempted.append(kwargs['Item']['checkout_date'])
            if len(attempted) == 1:
                raise EndpointConnectionError(endpoint_url='https://dynamodb.us-east-1.amazonaws.com')
            return put_item(**kwargs)

        orchestrator = _orchestrator(dynamodb_manager, _static_fetcher(), max_concurrency=1)
        with patch.object(dynamodb_manager.jobs, 'put_item', side_effect=flaky_put_item):
            summary = asyncio.run(orchestrator.run_sync())

        result = summary.details[0]
        assert result.success is True
        assert result.jobs_created == 1
        assert sorted(attempted) == ['2024-01-12', '2024-01-15']
        assert dynamodb_manager.list_existing_job_keys('prop-1') == {
            date.fromisoformat(attempted[1])
        }
        item = dynamodb_manager.properties.get_item(Key={'property_id': 'prop-1'})['Item']
        assert item['last_synced'] == NOW.isoformat()
