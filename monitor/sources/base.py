"""Data source adapter interface and normalized query results."""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import fmean
from typing import Optional, Protocol, runtime_checkable

from models.enums import Reducer


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    @classmethod
    def ending_at(cls, end, window_seconds):
        return cls(start=end - timedelta(seconds=window_seconds), end=end)

    @property
    def seconds(self):
        return (self.end - self.start).total_seconds()


@dataclass
class Series:
    """One time series: its labels and (timestamp, value) points, oldest first."""
    labels: dict = field(default_factory=dict)
    points: list = field(default_factory=list)

    def values(self):
        return [v for _, v in self.points if v is not None and not math.isnan(v)]

    def reduce(self, reducer=Reducer.LAST) -> Optional[float]:
        values = self.values()
        if not values:
            return None
        if reducer is Reducer.LAST:
            return values[-1]
        if reducer is Reducer.AVG:
            return fmean(values)
        if reducer is Reducer.MIN:
            return min(values)
        return max(values)


@dataclass
class TimeSeriesResult:
    source: str
    series: list = field(default_factory=list)

    def __len__(self):
        return len(self.series)


@runtime_checkable
class DataSourceAdapter(Protocol):
    def query(self, source: str, query_string: str, time_range: TimeRange, step: int,
              timeout: Optional[float] = None) -> TimeSeriesResult:
        """Run one query. Raises QueryError on timeout, backend or query failure."""
        ...
