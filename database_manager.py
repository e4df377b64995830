"""Database coordination layer: engine, pooled sessions and transactional scopes."""

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, scoped_session
from contextlib import contextmanager
from typing import Dict, Tuple
import logging

from errors import ReservationError
from models import Base, Show, Seat, Hold, LedgerEntry, LedgerEvent, SeatStatus

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str):
        url = make_url(database_url)
        engine_kwargs = {"echo": False, "pool_pre_ping": True}
        if url.get_backend_name() == 'sqlite':
            # Writers wait on the file lock instead of failing immediately
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            engine_kwargs.update(
                pool_size=20,
                max_overflow=40,
                pool_recycle=3600,   # Recycle connections after 1 hour
            )
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise.

        Scopes must not be nested on one thread: the scoped session is shared per thread.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except ReservationError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.exception(f"Database error: {e}")
            raise
        finally:
            self.session_factory.remove()

    def health_check(self) -> Dict:
        """Report database connectivity and show count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                show_count = session.query(Show).count()
                return {
                    "status": "healthy",
                    "database": "connected",
                    "shows": show_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def reset_all(self) -> Tuple[bool, Dict[str, int]]:
        """Clear holds, ledger and seat metadata, returning every seat to FREE."""
        try:
            with self.get_session() as session:
                deleted_events = session.query(LedgerEvent).delete(synchronize_session=False)
                deleted_entries = session.query(LedgerEntry).delete(synchronize_session=False)
                deleted_holds = session.query(Hold).delete(synchronize_session=False)

                updated_seats = session.query(Seat).update(
                    {
                        Seat.status: SeatStatus.FREE,
                        Seat.hold_id: None,
                        Seat.hold_expires_at: None,
                    },
                    synchronize_session=False,
                )
                for show in session.query(Show).all():
                    show.available_seats = show.total_seats

                return True, {
                    "holds_cleared": deleted_holds,
                    "bookings_cleared": deleted_entries,
                    "events_cleared": deleted_events,
                    "seats_reset": updated_seats,
                }
        except Exception as e:
            logger.error(f"Reset all seats error: {e}")
            return False, {"error": str(e)}

    def dispose(self) -> None:
        self.session_factory.remove()
        self.engine.dispose()
