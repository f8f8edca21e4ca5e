"""DynamoDB manager for properties, cleaners and cleaning jobs."""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import List, Optional, Set

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import PersistenceError
from processor.models import ACTIVE_JOB_STATUSES, AssignedCleaner, JobRecord, Property

logger = logging.getLogger(__name__)


def _parse_day(value: str) -> Optional[date]:
    """Read the calendar day from an ISO date or timestamp string."""
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    def __init__(
        self,
        properties_table: str,
        jobs_table: str,
        cleaners_table: str,
        profiles_table: Optional[str] = None
    ):
        """
        Initialize DynamoDB resource and table references.

        Args:
            properties_table: Table keyed by property_id
            jobs_table: Table keyed by property_id + checkout_date
            cleaners_table: Table keyed by property_id + cleaner_id
            profiles_table: Optional table keyed by user_id holding push tokens
        """
        self.dynamodb = boto3.resource('dynamodb')
        self.properties = self.dynamodb.Table(properties_table)
        self.jobs = self.dynamodb.Table(jobs_table)
        self.cleaners = self.dynamodb.Table(cleaners_table)
        self.profiles = self.dynamodb.Table(profiles_table) if profiles_table else None
        logger.info(
            f"Initialized DynamoDBManager for tables: {properties_table}, "
            f"{jobs_table}, {cleaners_table}"
        )

    def list_active_properties(self) -> List[Property]:
        """
        Retrieve all active properties using a Scan operation.

        Returns:
            List of Property objects

        Raises:
            PersistenceError: If the scan fails
        """
        try:
            items = self._scan_all(self.properties, FilterExpression=Attr('active').eq(True))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning properties table: {e}")
            raise PersistenceError("Failed to list active properties") from e

        properties = []
        for item in items:
            prop = self._item_to_property(item)
            if prop:
                properties.append(prop)

        logger.info(f"Retrieved {len(properties)} active properties")
        return properties

    def list_existing_job_keys(self, property_id: str) -> Set[date]:
        """
        Retrieve checkout days that already have a job for a property.

        Args:
            property_id: Property to query

        Returns:
            Set of checkout dates

        Raises:
            PersistenceError: If the query fails
        """
        try:
            items = self._query_all(
                self.jobs,
                KeyConditionExpression=Key('property_id').eq(property_id),
                ProjectionExpression='checkout_date'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error querying jobs for property {property_id}: {e}")
            raise PersistenceError("Failed to load existing jobs") from e

        keys = set()
        for item in items:
            day = _parse_day(item.get('checkout_date', ''))
            if day:
                keys.add(day)
        return keys

    def count_active_jobs(self, property_id: str, today: date) -> int:
        """
        Count pending or confirmed jobs from today onwards.

        Args:
            property_id: Property to query
            today: First checkout day to count

        Returns:
            Number of active jobs

        Raises:
            PersistenceError: If the query fails
        """
        try:
            items = self._query_all(
                self.jobs,
                KeyConditionExpression=(
                    Key('property_id').eq(property_id)
                    & Key('checkout_date').gte(today.isoformat())
                ),
                FilterExpression=Attr('status').is_in(list(ACTIVE_JOB_STATUSES))
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error counting jobs for property {property_id}: {e}")
            raise PersistenceError("Failed to count active jobs") from e
        return len(items)

    def create_job(self, record: JobRecord) -> bool:
        """
        Write a new cleaning job unless one exists for the same day.

        Args:
            record: Job to create

        Returns:
            True if written, False if a job already existed for the key

        Raises:
            PersistenceError: If the write fails
        """
        item = self._job_record_to_item(record)
        try:
            self.jobs.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(checkout_date)'
            )
        except (ClientError, BotoCoreError) as e:
            if (
                isinstance(e, ClientError)
                and e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'
            ):
                logger.info(
                    f"Job for property {record.property_id} on "
                    f"{item['checkout_date']} already exists"
                )
                return False
            raise PersistenceError(
                f"Failed to create job for {item['checkout_date']}"
            ) from e
        return True

    def mark_property_synced(self, property_id: str, timestamp: datetime) -> None:
        """Record a successful sync and clear any previous sync error."""
        try:
            self.properties.update_item(
                Key={'property_id': property_id},
                UpdateExpression='SET last_synced = :ts REMOVE sync_error',
                ExpressionAttributeValues={':ts': timestamp.isoformat()}
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError("Failed to update property sync status") from e

    def mark_property_sync_error(self, property_id: str, message: str) -> None:
        """Record a failed sync, leaving last_synced untouched."""
        try:
            self.properties.update_item(
                Key={'property_id': property_id},
                UpdateExpression='SET sync_error = :err',
                ExpressionAttributeValues={':err': message}
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError("Failed to record property sync error") from e

    def get_assigned_cleaners(self, property_id: str) -> List[AssignedCleaner]:
        """
        Retrieve cleaners linked to a property, primary first.

        Args:
            property_id: Property to query

        Returns:
            List of AssignedCleaner objects

        Raises:
            PersistenceError: If the query fails
        """
        try:
            items = self._query_all(
                self.cleaners,
                KeyConditionExpression=Key('property_id').eq(property_id)
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error querying cleaners for property {property_id}: {e}")
            raise PersistenceError("Failed to fetch cleaners") from e

        cleaners = [
            AssignedCleaner(
                cleaner_id=item['cleaner_id'],
                is_primary=bool(item.get('is_primary', False)),
                created_at=str(item.get('created_at', ''))
            )
            for item in items
        ]
        cleaners.sort(key=lambda c: (not c.is_primary, c.created_at, c.cleaner_id))
        return cleaners

    def get_push_token(self, user_id: str) -> Optional[str]:
        """Look up a host's push token, None when unknown."""
        if self.profiles is None or not user_id:
            return None
        try:
            response = self.profiles.get_item(Key={'user_id': user_id})
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Error reading profile {user_id}: {e}")
            return None
        return response.get('Item', {}).get('expo_push_token')

    def _scan_all(self, table, **kwargs) -> List[dict]:
        response = table.scan(**kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = table.scan(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _query_all(self, table, **kwargs) -> List[dict]:
        response = table.query(**kwargs)
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = table.query(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
            items.extend(response.get('Items', []))
        return items

    def _item_to_property(self, item: dict) -> Optional[Property]:
        """
        Convert DynamoDB item to Property object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Property object or None if conversion fails
        """
        try:
            return Property(
                property_id=item['property_id'],
                name=item.get('name', ''),
                ical_url=item['ical_url'],
                user_id=item.get('user_id'),
                last_synced=item.get('last_synced'),
                sync_error=item.get('sync_error')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to Property: missing {e}")
            return None

    def _job_record_to_item(self, record: JobRecord) -> dict:
        """
        Convert JobRecord object to DynamoDB item.

        Args:
            record: JobRecord object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'property_id': record.property_id,
            'checkout_date': record.checkout_date.isoformat(),
            'job_id': str(uuid.uuid4()),
            'status': record.status,
            'is_same_day_turnaround': record.is_same_day_turnaround,
            'created_at': datetime.now(timezone.utc).isoformat()
        }

        # Add optional fields if present
        if record.cleaner_id:
            item['cleaner_id'] = record.cleaner_id
        if record.checkin_date:
            item['checkin_date'] = record.checkin_date.isoformat()

        return item
