import logging
from typing import List, Optional, Protocol
from sqlalchemy import case, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.common.utils.datetime import get_current_datetime
from src.api.numbering.models.series_counter import SeriesCounter
from src.api.numbering.schemas.series_counter import CounterRead

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    def get_counter(self, series: str) -> Optional[CounterRead]:
        ...

    def list_counters(self) -> List[CounterRead]:
        ...

    def increment_counter(self, series: str, start_value: int, floor: Optional[int] = None) -> int:
        ...

    def ensure_counter(self, series: str, start_value: int) -> bool:
        ...


class SqlCounterStore:
    """
    Series counters kept in the database.

    Every increment is a single ``UPDATE ... SET current_value =
    current_value + 1`` (raised past a floor when one is given) issued as
    the first statement of its own short transaction, so the database row
    lock serializes concurrent callers across all service instances. Each
    call opens its own session and is safe to run from worker threads.
    """

    def __init__(self, engine: Engine, max_attempts: int = 5):
        self.engine = engine
        self.max_attempts = max_attempts

    def get_counter(self, series: str) -> Optional[CounterRead]:
        with Session(self.engine) as session:
            counter = session.get(SeriesCounter, series)
            return CounterRead.model_validate(counter) if counter else None

    def list_counters(self) -> List[CounterRead]:
        with Session(self.engine) as session:
            counters = session.scalars(
                select(SeriesCounter).order_by(SeriesCounter.series)).all()
            return [CounterRead.model_validate(counter) for counter in counters]

    def increment_counter(self, series: str, start_value: int, floor: Optional[int] = None) -> int:
        """
        Atomically increment the counter of ``series`` and return the new value.

        A missing counter is created at ``start_value`` and incremented in the
        same transaction. If another caller creates it first the insert fails
        on the primary key and the increment is retried.

        ``floor`` is the highest number already handed out elsewhere for the
        series. The returned value is always greater than it.
        """
        if floor is None:
            next_value = SeriesCounter.current_value + 1
        else:
            next_value = case(
                (SeriesCounter.current_value < floor, floor + 1),
                else_=SeriesCounter.current_value + 1,
            )

        for attempt in range(1, self.max_attempts + 1):
            with Session(self.engine) as session:
                try:
                    result = session.execute(
                        update(SeriesCounter)
                        .where(SeriesCounter.series == series)
                        .values(current_value=next_value,
                                updated_at=get_current_datetime())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        value = max(start_value, floor if floor is not None else start_value) + 1
                        session.add(SeriesCounter(
                            series=series, current_value=value, start_value=start_value))
                        session.commit()
                        logger.info(f"Created counter for series {series} starting at {start_value}")
                        return value

                    value = session.scalars(
                        select(SeriesCounter.current_value).where(SeriesCounter.series == series)
                    ).one()
                    session.commit()
                    return value
                except IntegrityError:
                    session.rollback()
                    logger.info(
                        f"Counter for series {series} created concurrently, retrying (attempt {attempt})")

        raise RuntimeError(
            f"Could not increment counter for series {series} after {self.max_attempts} attempts")

    def ensure_counter(self, series: str, start_value: int) -> bool:
        """Create the counter at ``start_value`` if missing. Returns True when created."""
        with Session(self.engine) as session:
            if session.get(SeriesCounter, series) is not None:
                return False
            session.add(SeriesCounter(series=series, current_value=start_value, start_value=start_value))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True
