from sqlmodel import Field
from src.api.common.models.base import BaseModel, TimestampMixin


class SeriesCounter(BaseModel, TimestampMixin, table=True):
    """
    Last allocated number of an invoice series.

    Rows are created lazily and only ever incremented.
    """
    series: str = Field(primary_key=True, max_length=32)
    current_value: int = Field(nullable=False)
    start_value: int = Field(nullable=False)
