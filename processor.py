# processor.py
"""
Metering host: ingests PZEM004T readings over MQTT, keeps month/day
baselines, stores usage + bill in InfluxDB and forecasts slab crossings
"""

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import schedule

from config import (
    DAILY_RESET_TIME,
    DEFAULT_SLABS,
    HISTORY_WINDOW_DAYS,
    INFLUX_BUCKET,
    MONTH_START_DAY,
    TIMEZONE_GMT7,
    init_influx,
    init_mqtt,
    query_influx,
    write_influx,
)
from errors import ValidationError
from predictor import ConsumptionRecord, predict_crossing
from pricing import calculate_bill
from slabs import load_slab_table

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("voltage", "current", "power", "energy", "frequency", "pf")


def _flux_time(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class ElectricityProcessor:
    def __init__(self, slab_table=None, influx_client=None):
        """
        Load the slab table, connect InfluxDB and restore energy baselines.

        A malformed slab table is a fatal configuration error.
        """
        try:
            self.slab_table = slab_table if slab_table is not None else load_slab_table(DEFAULT_SLABS)
        except ValidationError as e:
            logger.error(f"Invalid slab table configuration: {e}")
            raise

        self.influx_client = influx_client if influx_client is not None else init_influx()
        logger.info("Connected to InfluxDB")

        self.last_energy_reading = None
        self.monthly_start_energy = None
        self.daily_start_energy = None

        # Health monitoring
        self.last_data_time = None
        self.mqtt_connected = False
        self.influx_healthy = True

        self._initialize_energy_baseline()

        # Daily baseline reset; the job also resets the monthly baseline on MONTH_START_DAY
        schedule.every().day.at(DAILY_RESET_TIME).do(self._midnight_job)

        logger.info("ElectricityProcessor initialised")

    # ==========================
    # BASELINES
    # ==========================

    def _initialize_energy_baseline(self):
        """Restore latest meter energy and month/day baselines from InfluxDB"""
        try:
            self.last_energy_reading = self._get_latest_energy_from_db()
            self.monthly_start_energy = self._get_month_start_energy_from_db()
            self.daily_start_energy = self._get_daily_start_energy_from_db()

            self._apply_fallback_logic()

            logger.info(
                f"Baselines restored: energy={self.last_energy_reading} kWh, "
                f"month start={self.monthly_start_energy} kWh, day start={self.daily_start_energy} kWh"
            )
        except Exception as e:
            logger.error(f"Failed to restore energy baselines: {e}")
            self.last_energy_reading = 0
            self.monthly_start_energy = 0
            self.daily_start_energy = 0

    def _first_energy_value(self, flux) -> float:
        for _, value in query_influx(self.influx_client, flux):
            return float(value)
        return 0

    def _get_latest_energy_from_db(self):
        flux = f"""
from(bucket: "{INFLUX_BUCKET}")
  |> range(start: -30d)
  |> filter(fn: (r) => r["_measurement"] == "data")
  |> filter(fn: (r) => r["_field"] == "energy")
  |> last()
"""
        return self._first_energy_value(flux)

    def _energy_at(self, start: datetime, window: timedelta, lookback: str):
        """First energy reading in [start, start + window), else the last one before start"""
        flux = f"""
from(bucket: "{INFLUX_BUCKET}")
  |> range(start: {_flux_time(start)}, stop: {_flux_time(start + window)})
  |> filter(fn: (r) => r["_measurement"] == "data")
  |> filter(fn: (r) => r["_field"] == "energy")
  |> first()
"""
        value = self._first_energy_value(flux)
        if value:
            return value

        flux_fallback = f"""
from(bucket: "{INFLUX_BUCKET}")
  |> range(start: {lookback}, stop: {_flux_time(start)})
  |> filter(fn: (r) => r["_measurement"] == "data")
  |> filter(fn: (r) => r["_field"] == "energy")
  |> last()
"""
        return self._first_energy_value(flux_fallback)

    def _month_start(self, now: datetime) -> datetime:
        month_start = now.replace(day=MONTH_START_DAY, hour=0, minute=0, second=0, microsecond=0)
        if now.day < MONTH_START_DAY:
            if month_start.month == 1:
                month_start = month_start.replace(year=month_start.year - 1, month=12)
            else:
                month_start = month_start.replace(month=month_start.month - 1)
        return month_start

    def _get_month_start_energy_from_db(self):
        month_start = self._month_start(datetime.now(TIMEZONE_GMT7))
        return self._energy_at(month_start, timedelta(days=1), "-60d")

    def _get_daily_start_energy_from_db(self):
        now = datetime.now(TIMEZONE_GMT7)
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self._energy_at(today_start, timedelta(hours=1), "-7d")

    def _apply_fallback_logic(self):
        """Fill missing baselines from the latest reading and clamp them to it"""
        if self.last_energy_reading == 0:
            logger.warning("No energy data yet, baselines default to 0")
            return

        if self.monthly_start_energy == 0:
            self.monthly_start_energy = self.last_energy_reading
            logger.warning(f"No month-start baseline, using current energy {self.monthly_start_energy} kWh")

        if self.daily_start_energy == 0:
            self.daily_start_energy = self.last_energy_reading
            logger.warning(f"No day-start baseline, using current energy {self.daily_start_energy} kWh")

        if self.monthly_start_energy > self.last_energy_reading:
            logger.warning(f"Month-start baseline {self.monthly_start_energy} > current energy, clamping")
            self.monthly_start_energy = self.last_energy_reading

        if self.daily_start_energy > self.last_energy_reading:
            logger.warning(f"Day-start baseline {self.daily_start_energy} > current energy, clamping")
            self.daily_start_energy = self.last_energy_reading

    def _midnight_job(self):
        try:
            self._reset_daily_energy()
            if datetime.now(TIMEZONE_GMT7).day == MONTH_START_DAY:
                self._reset_monthly_energy()
        except Exception as e:
            logger.error(f"Midnight job failed: {e}")

    def _reset_monthly_energy(self):
        if self.last_energy_reading is not None:
            self.monthly_start_energy = self.last_energy_reading
            logger.info(f"Reset monthly energy baseline: {self.monthly_start_energy} kWh")

    def _reset_daily_energy(self):
        if self.last_energy_reading is not None:
            self.daily_start_energy = self.last_energy_reading
            logger.info(f"Reset daily energy baseline: {self.daily_start_energy} kWh")

    # ==========================
    # SENSOR DATA
    # ==========================

    def _detect_meter_reset(self, new_energy):
        """Counter dropping below half the last reading means the meter was reset"""
        if self.last_energy_reading is None:
            return False

        if new_energy < self.last_energy_reading * 0.5:
            logger.critical(
                f"METER RESET DETECTED: energy dropped from {self.last_energy_reading} kWh to {new_energy} kWh"
            )
            write_influx(
                self.influx_client,
                "alerts",
                {
                    "alert_type": "meter_reset",
                    "old_energy": self.last_energy_reading,
                    "new_energy": new_energy,
                    "severity": "critical",
                },
                {"alert_type": "meter_reset"},
            )
            return True
        return False

    def _validate_sensor_data(self, voltage, current, power, energy, frequency, pf):
        if energy < 0:
            logger.warning(f"Negative energy: {energy} kWh")
            return False
        if voltage < 0:
            logger.warning(f"Negative voltage: {voltage} V")
            return False
        if current < 0:
            logger.warning(f"Negative current: {current} A")
            return False
        if pf < 0 or pf > 1:
            logger.warning(f"Invalid power factor: {pf}")
            return False

        if power > 10000:
            logger.warning(f"Power spike: {power} W")
        if frequency > 0 and (frequency < 45 or frequency > 55):
            logger.warning(f"Abnormal frequency: {frequency} Hz")
        if self.last_energy_reading is not None and energy - self.last_energy_reading > 1:
            logger.warning(f"Energy jumped by {energy - self.last_energy_reading:.3f} kWh in one message")
        return True

    def process_mqtt_message(self, client, userdata, message):
        """paho on_message handler for meter JSON payloads"""
        try:
            payload = message.payload.decode('utf-8')
            logger.debug(f"Received from {message.topic}: {payload}")
            data = json.loads(payload)

            if all(key in data for key in REQUIRED_FIELDS):
                self._process_meter_data(data)
            else:
                logger.warning(f"Incomplete payload: {data}")

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON payload: {e}")
        except Exception as e:
            logger.error(f"Failed to process MQTT message: {e}")

    def _process_meter_data(self, data: Dict):
        timestamp = datetime.now(TIMEZONE_GMT7)
        voltage, current, power, energy, frequency, pf = (float(data.get(k, 0)) for k in REQUIRED_FIELDS)

        if not self._validate_sensor_data(voltage, current, power, energy, frequency, pf):
            logger.warning("Invalid sensor data, message skipped")
            return

        self._detect_meter_reset(energy)

        self.last_energy_reading = energy
        self.last_data_time = timestamp

        daily_kwh, monthly_kwh = self._current_usage()
        costs = self.compute_costs(monthly_kwh, daily_kwh)

        write_influx(
            self.influx_client,
            "data",
            {
                "voltage": voltage,
                "current": current,
                "power": power,
                "energy": energy,
                "frequency": frequency,
                "power_factor": pf,
                "daily_kwh": daily_kwh,
                "monthly_kwh": monthly_kwh,
                "daily_cost": costs["daily"]["cost"],
                "monthly_cost": costs["monthly"]["cost"],
            },
            {},
        )

        logger.info(f"Processed reading: Power={power}W, Daily={daily_kwh:.3f}kWh, Monthly={monthly_kwh:.3f}kWh")

    # ==========================
    # BILLING
    # ==========================

    def _current_usage(self):
        energy = float(self.last_energy_reading or 0)
        daily = max(0.0, energy - self.daily_start_energy) if self.daily_start_energy is not None else 0.0
        monthly = max(0.0, energy - self.monthly_start_energy) if self.monthly_start_energy is not None else 0.0
        return daily, monthly

    def compute_costs(self, monthly_kwh: float, daily_kwh: float) -> Dict:
        """
        Month-to-date bill and today's share of it.

        Slabs apply to the cumulative monthly total, so today's cost is the
        month-to-date bill minus the bill up to the end of yesterday.
        """
        monthly_bill = calculate_bill(self.slab_table, monthly_kwh)
        yesterday_bill = calculate_bill(self.slab_table, max(0, monthly_kwh - daily_kwh))
        return {
            "monthly": {"kwh": monthly_kwh, "cost": monthly_bill.total_bill, "bill": monthly_bill},
            "daily": {
                "kwh": daily_kwh,
                "cost": monthly_bill.total_bill - yesterday_bill.total_bill,
                "energy_charges": monthly_bill.energy_charges - yesterday_bill.energy_charges,
                "taxes": monthly_bill.taxes - yesterday_bill.taxes,
            },
        }

    def get_billing_slabs(self) -> List[Dict]:
        return self.slab_table.to_list()

    def get_daily_history(self, days: int = HISTORY_WINDOW_DAYS) -> List[ConsumptionRecord]:
        """Per-day usage (max of daily_kwh per day) for the last `days` days"""
        flux = f"""
from(bucket: "{INFLUX_BUCKET}")
  |> range(start: -{int(days)}d)
  |> filter(fn: (r) => r["_measurement"] == "data")
  |> filter(fn: (r) => r["_field"] == "daily_kwh")
  |> aggregateWindow(every: 1d, fn: max, createEmpty: false, timeSrc: "_start")
"""
        try:
            rows = query_influx(self.influx_client, flux)
        except Exception as e:
            logger.error(f"Failed to read usage history: {e}")
            return []
        return [
            ConsumptionRecord(timestamp=ts, units=max(0.0, float(value)))
            for ts, value in rows
            if value is not None
        ]

    def get_consumption_summary(self) -> Dict:
        """Current-month stats, bill breakdown and slab crossing forecast"""
        daily_kwh, monthly_kwh = self._current_usage()
        costs = self.compute_costs(monthly_kwh, daily_kwh)
        prediction = predict_crossing(self.slab_table, monthly_kwh, self.get_daily_history())

        return {
            "timestamp": datetime.now(TIMEZONE_GMT7).isoformat(),
            "totalUnitsThisMonth": round(monthly_kwh),
            "todayUsage": round(daily_kwh, 1),
            "estimatedBill": costs["monthly"]["cost"],
            "todayCost": costs["daily"]["cost"],
            "bill": costs["monthly"]["bill"].to_dict(),
            "prediction": prediction.to_dict(),
        }

    # ==========================
    # MAIN LOOP
    # ==========================

    def _health_check(self):
        issues = []

        if self.last_data_time is not None:
            age = (datetime.now(TIMEZONE_GMT7) - self.last_data_time).total_seconds()
            if age > 300:
                issues.append(f"No data for {age / 60:.1f} minutes")

        try:
            self.influx_client.ping()
            self.influx_healthy = True
        except Exception:
            self.influx_healthy = False
            issues.append("InfluxDB unavailable")

        if issues:
            logger.warning(f"Health check issues: {', '.join(issues)}")
        else:
            logger.info("Health check: all systems healthy")
        return not issues

    def _log_status(self):
        try:
            summary = self.get_consumption_summary()
        except Exception as e:
            logger.error(f"Failed to build consumption summary: {e}")
            return
        prediction = summary["prediction"]
        logger.info(
            f"Status: today={summary['todayUsage']}kWh, month={summary['totalUnitsThisMonth']}kWh, "
            f"bill={summary['estimatedBill']}, next slab at {prediction['nextSlabThreshold']} "
            f"in {prediction['daysToNextSlab']} days"
        )

    def run(self):
        mqtt_client = None
        try:
            mqtt_client = init_mqtt(self.process_mqtt_message)
            self.mqtt_connected = True
            logger.info("Connected to MQTT broker")

            mqtt_client.loop_start()
            logger.info("ElectricityProcessor running...")

            while True:
                schedule.run_pending()

                # Status + health every 5 minutes
                if int(time.time()) % 300 == 0:
                    self._log_status()
                    self._health_check()

                time.sleep(1)

        except KeyboardInterrupt:
            logger.info("Stopping ElectricityProcessor...")
        except Exception as e:
            logger.error(f"Main loop failed: {e}")
            raise
        finally:
            if mqtt_client is not None:
                mqtt_client.loop_stop()
                mqtt_client.disconnect()
                self.mqtt_connected = False
