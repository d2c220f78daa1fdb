"""Database coordination layer: engine, transactional sessions and admin helpers."""

from sqlalchemy import create_engine, delete, func, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
from typing import Dict, Tuple
import logging

from domain import SeatStatus
from errors import StoreUnavailableError
from models import Base, Hold, Payment, Reservation, Screening, Seat

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions shared by the SQL-backed stores."""

    def __init__(self, database_url: str, echo: bool = False):
        engine_kwargs = {"pool_pre_ping": True, "echo": echo}
        if database_url.startswith("sqlite"):
            # Pooled connections move between request threads
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            engine_kwargs.update(
                pool_size=20,
                max_overflow=40,
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        self.engine = create_engine(database_url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as e:
            session.rollback()
            logger.error(f"Database unavailable: {e}")
            raise StoreUnavailableError("database unavailable") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> Dict:
        """Report database connectivity and screening count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                screening_count = session.scalar(select(func.count()).select_from(Screening))

                return {
                    "status": "healthy",
                    "database": "connected",
                    "screenings": screening_count
                }
        except StoreUnavailableError as e:
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def reset_all_seats(self) -> Tuple[bool, Dict[str, int]]:
        """Clear holds, reservations and payments and put every seat back to available."""
        with self.get_session() as session:
            session.execute(delete(Payment))
            deleted_reservations = session.execute(delete(Reservation)).rowcount
            deleted_holds = session.execute(delete(Hold)).rowcount
            updated_seats = session.execute(
                update(Seat).values(status=SeatStatus.AVAILABLE, hold_id=None)
            ).rowcount

            return True, {
                "holds_cleared": deleted_holds,
                "reservations_cleared": deleted_reservations,
                "seats_reset": updated_seats,
            }

    def dispose(self):
        self.engine.dispose()
