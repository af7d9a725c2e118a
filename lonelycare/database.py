"""
Database setup and SQLAlchemy-backed repository
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from lonelycare.logging_config import get_logger
from lonelycare.models import AlertLevel, HourBucket, HourlyHistoryEntry, SubjectStatus
from lonelycare.repository import ActivityRepository, RepositoryError
from lonelycare.utils import from_utc_naive, to_utc_naive

logger = get_logger(__name__)

Base = declarative_base()


class HourBucketDB(Base):
    """The current hour bucket (a single row)"""
    __tablename__ = "hour_bucket"

    id = Column(Integer, primary_key=True)
    hour_key = Column(DateTime, nullable=False)
    count = Column(Integer, default=0)
    paused_until_next_hour = Column(Boolean, default=False)


class HourlyHistoryDB(Base):
    """Archived hour buckets"""
    __tablename__ = "hourly_history"

    hour_key = Column(DateTime, primary_key=True)
    count = Column(Integer, default=0)
    archived_at = Column(DateTime)


class SubjectStatusDB(Base):
    """Escalation state per monitored subject"""
    __tablename__ = "subject_status"

    subject_id = Column(String, primary_key=True)
    last_activity_at = Column(DateTime, nullable=False, index=True)
    alert_level = Column(String, default=AlertLevel.NORMAL.value)

    notifications = relationship("NotificationMarkDB", cascade="all, delete-orphan",
                                 back_populates="subject")


class NotificationMarkDB(Base):
    """When a subject was last notified at a given level"""
    __tablename__ = "notification_mark"

    subject_id = Column(String, ForeignKey("subject_status.subject_id"), primary_key=True)
    alert_level = Column(String, primary_key=True)
    notified_at = Column(DateTime, nullable=False)

    subject = relationship("SubjectStatusDB", back_populates="notifications")


_SINGLE_BUCKET_ID = 1


def create_db_engine(database_url: str):
    """Create an engine; SQLite URLs get thread-safe connection arguments."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


class SqlAlchemyRepository(ActivityRepository):
    """
    ActivityRepository backed by any SQLAlchemy-supported database.
    Datetimes are stored as naive UTC.
    """

    def __init__(self, database_url: str):
        self.engine = create_db_engine(database_url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self):
        """Initialize the database - create all tables"""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database initialized")

    def _run(self, action: str, fn):
        db = self.SessionLocal()
        try:
            result = fn(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error during {action}: {e}")
            raise RepositoryError(f"{action} failed: {e}")
        finally:
            db.close()

    def load_hour_bucket(self) -> Optional[HourBucket]:
        def load(db):
            row = db.get(HourBucketDB, _SINGLE_BUCKET_ID)
            if row is None:
                return None
            return HourBucket(hour_key=from_utc_naive(row.hour_key), count=row.count,
                              paused_until_next_hour=row.paused_until_next_hour)
        return self._run("load hour bucket", load)

    def save_hour_bucket(self, bucket: HourBucket) -> None:
        def save(db):
            db.merge(HourBucketDB(id=_SINGLE_BUCKET_ID,
                                  hour_key=to_utc_naive(bucket.hour_key),
                                  count=bucket.count,
                                  paused_until_next_hour=bucket.paused_until_next_hour))
        self._run("save hour bucket", save)

    def append_history(self, entry: HourlyHistoryEntry) -> None:
        def append(db):
            db.merge(HourlyHistoryDB(hour_key=to_utc_naive(entry.hour_key),
                                     count=entry.count,
                                     archived_at=to_utc_naive(entry.archived_at)))
        self._run("append history", append)

    def load_history(self) -> List[HourlyHistoryEntry]:
        def load(db):
            rows = db.query(HourlyHistoryDB).order_by(HourlyHistoryDB.hour_key.asc()).all()
            return [
                HourlyHistoryEntry(hour_key=from_utc_naive(r.hour_key), count=r.count,
                                   archived_at=from_utc_naive(r.archived_at))
                for r in rows
            ]
        return self._run("load history", load)

    def prune_history(self, before: datetime) -> int:
        def prune(db):
            return db.query(HourlyHistoryDB).filter(
                HourlyHistoryDB.hour_key <= to_utc_naive(before)
            ).delete(synchronize_session=False)
        return self._run("prune history", prune)

    def load_subjects(self) -> List[SubjectStatus]:
        def load(db):
            rows = db.query(SubjectStatusDB).all()
            return [
                SubjectStatus(
                    subject_id=r.subject_id,
                    last_activity_at=from_utc_naive(r.last_activity_at),
                    alert_level=AlertLevel(r.alert_level),
                    last_notified_at={AlertLevel(m.alert_level): from_utc_naive(m.notified_at)
                                      for m in r.notifications},
                )
                for r in rows
            ]
        return self._run("load subjects", load)

    def save_subject(self, status: SubjectStatus) -> None:
        def save(db):
            row = db.get(SubjectStatusDB, status.subject_id)
            if row is None:
                row = SubjectStatusDB(subject_id=status.subject_id)
                db.add(row)
            row.last_activity_at = to_utc_naive(status.last_activity_at)
            row.alert_level = status.alert_level.value

            wanted = {level.value: to_utc_naive(at) for level, at in status.last_notified_at.items()}
            for mark in list(row.notifications):
                if mark.alert_level in wanted:
                    mark.notified_at = wanted.pop(mark.alert_level)
                else:
                    row.notifications.remove(mark)
            for level, at in wanted.items():
                row.notifications.append(NotificationMarkDB(alert_level=level, notified_at=at))
        self._run("save subject", save)

    def delete_subject(self, subject_id: str) -> None:
        def delete(db):
            row = db.get(SubjectStatusDB, subject_id)
            if row is not None:
                db.delete(row)
        self._run("delete subject", delete)
