import asyncio
from sqlmodel import SQLModel

# Import all models to register them with SQLModel
from src.api.invoices.models.invoice import Invoice  # noqa: F401
from src.api.numbering.models.series_counter import SeriesCounter  # noqa: F401
from src.api.side_effects.models.side_effect_failure import SideEffectFailure  # noqa: F401
from src.api.common.utils.database import engine
from src.api.numbering.config import NumberingConfig
from src.api.numbering.services.counter_store import SqlCounterStore
from src.api.numbering.services.numbering_service import NumberingService


def init_db(db_engine=engine):
    """Initialize the database by creating all tables and seeding the invoice counters"""
    print("Creating database tables...")
    SQLModel.metadata.create_all(db_engine)
    print("Database tables created successfully.")

    numbering = NumberingService(NumberingConfig(), SqlCounterStore(db_engine))
    created = asyncio.run(numbering.initialize_counters())
    print(f"Invoice counters initialized: {created or 'none missing'}")
    return created


if __name__ == "__main__":
    init_db()
