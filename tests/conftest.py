from datetime import datetime, timedelta

import pytest
import schedule

from config import DEFAULT_SLABS
from predictor import ConsumptionRecord
from processor import ElectricityProcessor
from slabs import load_slab_table


@pytest.fixture
def slab_table():
    return load_slab_table(DEFAULT_SLABS)


@pytest.fixture
def make_history():
    """Build ConsumptionRecords from a list of per-day unit lists"""
    def _make(per_day, start=datetime(2025, 6, 1, 8, 0)):
        records = []
        for day_index, readings in enumerate(per_day):
            for hour, units in enumerate(readings):
                ts = start + timedelta(days=day_index, hours=hour)
                records.append(ConsumptionRecord(timestamp=ts, units=units))
        return records
    return _make


class FakeQueryApi:
    def __init__(self, tables):
        self.tables = tables
        self.queries = []

    def query(self, flux, org=None):
        self.queries.append(flux)
        return self.tables


class FakeWriteApi:
    def __init__(self, points):
        self.points = points

    def write(self, bucket=None, org=None, record=None):
        self.points.append(record)


class FakeInfluxClient:
    """Stands in for InfluxDBClient: empty query results, captured writes"""

    def __init__(self, tables=None):
        self._query_api = FakeQueryApi(tables or [])
        self.points = []

    def query_api(self):
        return self._query_api

    def write_api(self, write_options=None):
        return FakeWriteApi(self.points)

    def ping(self):
        return True


@pytest.fixture
def influx_client():
    return FakeInfluxClient()


@pytest.fixture
def processor(slab_table, influx_client):
    proc = ElectricityProcessor(slab_table=slab_table, influx_client=influx_client)
    yield proc
    schedule.clear()
