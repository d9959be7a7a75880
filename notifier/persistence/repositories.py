"""Data access layer (repositories) for persistence operations.

This module provides repository classes for notifications and dead-letter
entries. Repositories encapsulate database operations, work inside the
caller's session (and therefore the caller's transaction), and return domain
models rather than ORM models.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notifier.domain.models import (
    TERMINAL_STATUSES,
    Channel,
    DeadLetterEntry,
    Notification,
    NotificationStatus,
)
from notifier.utils.timestamps import utc_now

from .exceptions import (
    ConcurrentUpdateError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .schema import DeadLetterModel, NotificationModel, _format_datetime, notification_values

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


class NotificationRepository:
    """Repository for notification rows."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def create(self, notification: Notification) -> Notification:
        """Insert a new notification and return it with its assigned id.

        created_at and updated_at default to now when not already set.

        Raises:
            DataIntegrityError: If a constraint is violated
            PersistenceError: If database error occurs
        """
        now = utc_now()
        if notification.created_at is None:
            notification.created_at = now
        if notification.updated_at is None:
            notification.updated_at = notification.created_at

        try:
            model = NotificationModel.from_domain(notification)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()

        except IntegrityError as e:
            logger.error(f"Integrity error creating notification: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to create notification: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error creating notification: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create notification: {e}") from e

    def get_by_id(self, notification_id: int) -> Optional[Notification]:
        """Retrieve notification by primary key.

        Returns:
            Notification domain model if found, None otherwise

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            model = self.session.get(NotificationModel, notification_id)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notification {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notification: {e}") from e

    def get_by_id_and_user(self, notification_id: int, user_id: int) -> Optional[Notification]:
        """Retrieve a notification only if it belongs to the given user."""
        try:
            stmt = select(NotificationModel).where(
                NotificationModel.id == notification_id,
                NotificationModel.user_id == user_id,
            )
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(
                f"Error retrieving notification {notification_id} for user {user_id}: {e}",
                exc_info=True,
            )
            raise PersistenceError(f"Failed to retrieve notification: {e}") from e

    def save(self, notification: Notification) -> Notification:
        """Write every field of an existing notification back to its row.

        Raises:
            RecordNotFoundError: If the notification has no row
            PersistenceError: If database error occurs
        """
        if notification.id is None:
            raise RecordNotFoundError("Cannot save a notification without an id")

        try:
            model = self.session.get(NotificationModel, notification.id)
            if model is None:
                raise RecordNotFoundError(f"Notification {notification.id} not found")

            model.apply(notification)
            self.session.flush()
            return model.to_domain()

        except RecordNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error saving notification {notification.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save notification: {e}") from e

    def save_if_current(
        self, notification: Notification, expected_retry_count: Optional[int] = None
    ) -> Notification:
        """Write a notification back only if its row is not already final.

        The UPDATE matches only while the stored status is non-terminal and,
        when expected_retry_count is given, while the stored retry_count still
        equals it. A worker holding a stale copy therefore cannot overwrite a
        DELIVERED row or a newer attempt.

        Raises:
            RecordNotFoundError: If the notification has no row
            ConcurrentUpdateError: If the row is terminal or was moved on
            PersistenceError: If database error occurs
        """
        if notification.id is None:
            raise RecordNotFoundError("Cannot save a notification without an id")

        conditions = [
            NotificationModel.id == notification.id,
            NotificationModel.status.notin_([status.value for status in TERMINAL_STATUSES]),
        ]
        if expected_retry_count is not None:
            conditions.append(NotificationModel.retry_count == expected_retry_count)

        values = {
            getattr(NotificationModel, key): value
            for key, value in notification_values(notification).items()
        }

        try:
            stmt = (
                update(NotificationModel)
                .where(*conditions)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)
            self.session.flush()

            if result.rowcount != 1:
                current = self.session.get(
                    NotificationModel, notification.id, populate_existing=True
                )
                if current is None:
                    raise RecordNotFoundError(f"Notification {notification.id} not found")
                raise ConcurrentUpdateError(
                    f"Notification {notification.id} is {current.status} "
                    f"(retry_count={current.retry_count}); refusing to write "
                    f"{NotificationStatus(notification.status).value}"
                )

            model = self.session.get(NotificationModel, notification.id, populate_existing=True)
            return model.to_domain()

        except PersistenceError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Error saving notification {notification.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save notification: {e}") from e

    def find_by_user(
        self, user_id: int, page: int = 0, size: int = DEFAULT_PAGE_SIZE
    ) -> List[Notification]:
        """Page through a user's notifications, newest first."""
        stmt = (
            select(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return self._fetch(stmt, f"notifications for user {user_id}")

    def find_by_user_and_channel(
        self,
        user_id: int,
        channel: Channel,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> List[Notification]:
        """Page through a user's notifications on one channel, newest first."""
        stmt = (
            select(NotificationModel)
            .where(
                NotificationModel.user_id == user_id,
                NotificationModel.channel == Channel(channel).value,
            )
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return self._fetch(stmt, f"{channel} notifications for user {user_id}")

    def find_unread_in_app(self, user_id: int) -> List[Notification]:
        stmt = (
            select(NotificationModel)
            .where(
                NotificationModel.user_id == user_id,
                NotificationModel.channel == Channel.IN_APP.value,
                NotificationModel.is_read.is_(False),
            )
            .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
        )
        return self._fetch(stmt, f"unread notifications for user {user_id}")

    def count_unread(self, user_id: int) -> int:
        stmt = select(func.count()).select_from(NotificationModel).where(
            NotificationModel.user_id == user_id,
            NotificationModel.channel == Channel.IN_APP.value,
            NotificationModel.is_read.is_(False),
        )
        return self._scalar(stmt, f"unread count for user {user_id}")

    def count_since(self, user_id: int, channel: Channel, since: datetime) -> int:
        """Count notifications created for a user on a channel since a point in time."""
        stmt = select(func.count()).select_from(NotificationModel).where(
            NotificationModel.user_id == user_id,
            NotificationModel.channel == Channel(channel).value,
            NotificationModel.created_at >= _format_datetime(since),
        )
        return self._scalar(stmt, f"recent {channel} count for user {user_id}")

    def find_ready_for_retry(self, now: datetime, limit: int = 100) -> List[Notification]:
        """RETRY rows whose next_retry_at is at or before now, oldest first."""
        stmt = (
            select(NotificationModel)
            .where(
                NotificationModel.status == NotificationStatus.RETRY.value,
                NotificationModel.next_retry_at <= _format_datetime(now),
            )
            .order_by(NotificationModel.next_retry_at.asc())
            .limit(limit)
        )
        return self._fetch(stmt, "notifications ready for retry")

    def find_stale_pending(self, cutoff: datetime, limit: int = 100) -> List[Notification]:
        """PENDING rows not touched since cutoff, oldest first."""
        stmt = (
            select(NotificationModel)
            .where(
                NotificationModel.status == NotificationStatus.PENDING.value,
                NotificationModel.updated_at < _format_datetime(cutoff),
            )
            .order_by(NotificationModel.updated_at.asc())
            .limit(limit)
        )
        return self._fetch(stmt, "stale pending notifications")

    def find_by_status(self, status: NotificationStatus, limit: int = 100) -> List[Notification]:
        stmt = (
            select(NotificationModel)
            .where(NotificationModel.status == NotificationStatus(status).value)
            .order_by(NotificationModel.created_at.asc())
            .limit(limit)
        )
        return self._fetch(stmt, f"{status} notifications")

    def mark_all_read(self, user_id: int, now: Optional[datetime] = None) -> int:
        """Mark every unread in-app notification of a user as read.

        Returns:
            Number of rows updated
        """
        try:
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.user_id == user_id,
                    NotificationModel.channel == Channel.IN_APP.value,
                    NotificationModel.is_read.is_(False),
                )
                .values(is_read=True, read_at=_format_datetime(now or utc_now()))
            )
            result = self.session.execute(stmt)
            self.session.flush()
            return result.rowcount

        except SQLAlchemyError as e:
            logger.error(f"Error marking notifications read for user {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to mark notifications read: {e}") from e

    def touch_if_unchanged(self, notification: Notification, now: datetime) -> bool:
        """Bump updated_at only if the row still matches the loaded state.

        RETRY rows also have next_retry_at moved to now. Compares status,
        retry_count and updated_at, so a row a worker has moved on since it
        was read is left alone.

        Returns:
            True if the row was updated
        """
        values = {"updated_at": _format_datetime(now)}
        if notification.status == NotificationStatus.RETRY:
            values["next_retry_at"] = _format_datetime(now)

        try:
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id == notification.id,
                    NotificationModel.status == NotificationStatus(notification.status).value,
                    NotificationModel.retry_count == notification.retry_count,
                    NotificationModel.updated_at == _format_datetime(notification.updated_at),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)
            self.session.flush()
            return result.rowcount == 1

        except SQLAlchemyError as e:
            logger.error(f"Error touching notification {notification.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to touch notification: {e}") from e

    def _fetch(self, stmt, description: str) -> List[Notification]:
        try:
            models = self.session.execute(stmt).scalars().all()
            return [model.to_domain() for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving {description}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve {description}: {e}") from e

    def _scalar(self, stmt, description: str) -> int:
        try:
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting {description}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count {description}: {e}") from e


class DeadLetterRepository:
    """Repository for the append-only dead-letter table."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        """Insert a dead-letter entry.

        Raises:
            DataIntegrityError: If an entry already exists for the notification
            PersistenceError: If database error occurs
        """
        try:
            model = DeadLetterModel.from_domain(entry)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()

        except IntegrityError as e:
            logger.error(
                f"Integrity error adding dead letter for notification {entry.notification_id}: {e}",
                exc_info=True,
            )
            raise DataIntegrityError(
                f"Dead letter already recorded for notification {entry.notification_id}"
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Error adding dead letter: {e}", exc_info=True)
            raise PersistenceError(f"Failed to add dead letter: {e}") from e

    def get_by_notification_id(self, notification_id: int) -> Optional[DeadLetterEntry]:
        try:
            stmt = select(DeadLetterModel).where(DeadLetterModel.notification_id == notification_id)
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving dead letter for {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve dead letter: {e}") from e

    def find_by_user(
        self, user_id: int, page: int = 0, size: int = DEFAULT_PAGE_SIZE
    ) -> List[DeadLetterEntry]:
        stmt = (
            select(DeadLetterModel)
            .where(DeadLetterModel.user_id == user_id)
            .order_by(DeadLetterModel.created_at.desc(), DeadLetterModel.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return self._fetch(stmt)

    def find_by_channel(
        self, channel: Channel, page: int = 0, size: int = DEFAULT_PAGE_SIZE
    ) -> List[DeadLetterEntry]:
        stmt = (
            select(DeadLetterModel)
            .where(DeadLetterModel.channel == Channel(channel).value)
            .order_by(DeadLetterModel.created_at.desc(), DeadLetterModel.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return self._fetch(stmt)

    def count_by_channel(self, channel: Channel) -> int:
        stmt = select(func.count()).select_from(DeadLetterModel).where(
            DeadLetterModel.channel == Channel(channel).value
        )
        return self._scalar(stmt)

    def count(self) -> int:
        return self._scalar(select(func.count()).select_from(DeadLetterModel))

    def _fetch(self, stmt) -> List[DeadLetterEntry]:
        try:
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving dead letters: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve dead letters: {e}") from e

    def _scalar(self, stmt) -> int:
        try:
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting dead letters: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count dead letters: {e}") from e
