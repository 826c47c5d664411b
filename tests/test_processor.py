"""Tests for the metering host's billing path, with InfluxDB stubbed out."""
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from config import TIMEZONE_GMT7
from errors import ValidationError
from processor import ElectricityProcessor, _flux_time


def _message(payload, topic="home/pzem004t"):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(topic=topic, payload=body.encode("utf-8"))


READING = {"voltage": 227.0, "current": 1.5, "power": 310.0, "energy": 250.0, "frequency": 50.0, "pf": 0.91}


class TestStartup:
    def test_empty_database_gives_zero_baselines(self, processor):
        assert processor.last_energy_reading == 0
        assert processor.monthly_start_energy == 0
        assert processor.daily_start_energy == 0

    def test_invalid_slab_table_is_fatal(self, monkeypatch, influx_client):
        monkeypatch.setattr("processor.DEFAULT_SLABS", [{"slab_number": 1, "min_units": 0, "max_units": 10, "rate_per_unit": 1}])
        with pytest.raises(ValidationError):
            ElectricityProcessor(influx_client=influx_client)

    def test_billing_slabs(self, processor):
        slabs = processor.get_billing_slabs()
        assert len(slabs) == 6
        assert slabs[-1] == {"slabNumber": 6, "minUnits": 601, "maxUnits": None, "ratePerUnit": 35.0}


class TestCosts:
    def test_daily_cost_is_difference_of_cumulative_bills(self, processor):
        costs = processor.compute_costs(250, 10)

        assert costs["monthly"]["cost"] == 7180
        # bill(240) = 5820 + 1030 tax
        assert costs["daily"]["cost"] == 7180 - 6850
        assert costs["daily"]["energy_charges"] == 6100 - 5820

    def test_summary(self, processor):
        processor.last_energy_reading = 1250
        processor.monthly_start_energy = 1000
        processor.daily_start_energy = 1240

        summary = processor.get_consumption_summary()

        assert summary["totalUnitsThisMonth"] == 250
        assert summary["todayUsage"] == 10
        assert summary["estimatedBill"] == 7180
        assert summary["bill"]["taxes"] == 1080
        assert summary["prediction"]["nextSlabThreshold"] == 300
        assert summary["prediction"]["daysToNextSlab"] == 15  # fallback 3.5 units/day

    def test_daily_history_from_influx(self, processor, influx_client):
        day = datetime(2025, 6, 1, tzinfo=timezone.utc)
        record = SimpleNamespace(get_time=lambda: day, get_value=lambda: 4.2)
        influx_client.query_api().tables = [SimpleNamespace(records=[record])]

        history = processor.get_daily_history(days=7)

        assert len(history) == 1
        assert history[0].units == pytest.approx(4.2)
        assert "-7d" in influx_client.query_api().queries[-1]


class TestMqttMessages:
    def test_reading_is_billed_and_written(self, processor, influx_client):
        processor.process_mqtt_message(None, None, _message(READING))

        assert processor.last_energy_reading == 250.0
        assert len(influx_client.points) == 1

    def test_invalid_power_factor_skipped(self, processor, influx_client):
        processor.process_mqtt_message(None, None, _message(dict(READING, pf=1.5)))

        assert processor.last_energy_reading == 0
        assert influx_client.points == []

    def test_incomplete_payload_ignored(self, processor, influx_client):
        processor.process_mqtt_message(None, None, _message({"energy": 1.0}))
        assert influx_client.points == []

    def test_bad_json_ignored(self, processor, influx_client):
        processor.process_mqtt_message(None, None, _message("{not json"))
        assert influx_client.points == []

    def test_meter_reset_raises_alert(self, processor, influx_client):
        processor.last_energy_reading = 1000.0
        processor.process_mqtt_message(None, None, _message(dict(READING, energy=10.0)))

        # alert + data point
        assert len(influx_client.points) == 2
        assert processor.last_energy_reading == 10.0


class TestFluxTime:
    def test_local_midnight_converted_to_utc(self):
        local_midnight = datetime(2025, 6, 1, tzinfo=TIMEZONE_GMT7)
        assert _flux_time(local_midnight) == "2025-05-31T17:00:00Z"

    def test_utc_unchanged(self):
        assert _flux_time(datetime(2025, 6, 1, 8, 30, tzinfo=timezone.utc)) == "2025-06-01T08:30:00Z"


class FakeMqttClient:
    def __init__(self):
        self.started = False
        self.stopped = False
        self.disconnected = False

    def loop_start(self):
        self.started = True

    def loop_stop(self):
        self.stopped = True

    def disconnect(self):
        self.disconnected = True


class TestRun:
    def _fail(self):
        raise RuntimeError("scheduler crashed")

    def test_mqtt_stopped_when_loop_fails(self, processor, monkeypatch):
        mqtt_client = FakeMqttClient()
        monkeypatch.setattr("processor.init_mqtt", lambda callback: mqtt_client)
        monkeypatch.setattr("processor.schedule.run_pending", self._fail)

        with pytest.raises(RuntimeError, match="scheduler crashed"):
            processor.run()

        assert mqtt_client.started
        assert mqtt_client.stopped
        assert mqtt_client.disconnected
        assert not processor.mqtt_connected

    def test_mqtt_stopped_on_keyboard_interrupt(self, processor, monkeypatch):
        mqtt_client = FakeMqttClient()

        def interrupt():
            raise KeyboardInterrupt

        monkeypatch.setattr("processor.init_mqtt", lambda callback: mqtt_client)
        monkeypatch.setattr("processor.schedule.run_pending", interrupt)

        processor.run()

        assert mqtt_client.stopped
        assert mqtt_client.disconnected
