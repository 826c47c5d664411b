# config.py
"""
Tariff configuration, environment settings and MQTT / InfluxDB helpers
"""

import logging
import os
import time
from datetime import datetime, timezone, timedelta

import paho.mqtt.client as mqtt
from dotenv import load_dotenv
from influxdb_client import InfluxDBClient as InfluxDBClientV2, Point
from influxdb_client.client.write_api import SYNCHRONOUS

load_dotenv()

logger = logging.getLogger(__name__)

# ==========================
# TARIFF CONFIGURATION
# ==========================

# Residential slab table, loaded once at startup by slabs.load_slab_table
DEFAULT_SLABS = [
    {"slab_number": 1, "min_units": 1, "max_units": 100, "rate_per_unit": 22},
    {"slab_number": 2, "min_units": 101, "max_units": 200, "rate_per_unit": 25},
    {"slab_number": 3, "min_units": 201, "max_units": 300, "rate_per_unit": 28},
    {"slab_number": 4, "min_units": 301, "max_units": 400, "rate_per_unit": 30},
    {"slab_number": 5, "min_units": 401, "max_units": 600, "rate_per_unit": 32},
    {"slab_number": 6, "min_units": 601, "max_units": None, "rate_per_unit": 35},
]

TAX_RATE = float(os.getenv("TAX_RATE", 0.177))  # 17.7% on energy charges

# Units past the slab threshold used to estimate the marginal cost of crossing
MARGINAL_PROBE_UNITS = float(os.getenv("MARGINAL_PROBE_UNITS", 10))

# Units/day assumed when no consumption history is available
FALLBACK_DAILY_USAGE = float(os.getenv("FALLBACK_DAILY_USAGE", 3.5))

# Days of history handed to the crossing predictor
HISTORY_WINDOW_DAYS = int(os.getenv("HISTORY_WINDOW_DAYS", 30))

# Time Configuration
TIMEZONE_GMT7 = timezone(timedelta(hours=7))
DAILY_RESET_TIME = "00:00"  # HH:MM (24h)
MONTH_START_DAY = 1

# MQTT Configuration
MQTT_BROKER = os.getenv("MQTT_BROKER")
MQTT_PORT = int(os.getenv("MQTT_PORT", 1883))
MQTT_USER = os.getenv("MQTT_USER", "")
MQTT_PASS = os.getenv("MQTT_PASS", "")
MQTT_TOPICS = [t.strip() for t in os.getenv("MQTT_TOPICS", "").split(",") if t.strip()]

# InfluxDB Configuration (v2 only)
INFLUX_HOST = os.getenv("INFLUX_HOST")
INFLUX_PORT = int(os.getenv("INFLUX_PORT", 8086))
INFLUX_TOKEN = os.getenv("INFLUX_TOKEN")
INFLUX_ORG = os.getenv("INFLUX_ORG")
INFLUX_BUCKET = os.getenv("INFLUX_BUCKET")

# ==========================
# INFLUXDB FUNCTIONS
# ==========================

def init_influx(max_retries=3):
    """Create the InfluxDB client, retrying with exponential backoff"""
    if not INFLUX_TOKEN:
        raise RuntimeError("INFLUX_TOKEN is not configured for InfluxDB v2")

    url = f"http://{INFLUX_HOST}:{INFLUX_PORT}"

    for attempt in range(max_retries):
        try:
            client = InfluxDBClientV2(url=url, token=INFLUX_TOKEN, org=INFLUX_ORG)
            client.ping()
            return client
        except Exception as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** attempt  # 1s, 2s, 4s
                logger.warning(f"InfluxDB connection failed (attempt {attempt + 1}/{max_retries}): {e}")
                logger.warning(f"Retrying in {wait_time} seconds...")
                time.sleep(wait_time)
            else:
                raise RuntimeError(f"Failed to connect to InfluxDB after {max_retries} attempts: {e}")


def write_influx(client, measurement, fields, tags=None, max_retries=2):
    """
    Write one point to InfluxDB, retrying on failure.

    Args:
        client: InfluxDBClient
        measurement (str): measurement name
        fields (dict): field values, e.g. {"monthly_kwh": 120.5}
        tags (dict): point tags
        max_retries (int): retries after the first attempt
    """
    for attempt in range(max_retries + 1):
        try:
            write_api = client.write_api(write_options=SYNCHRONOUS)
            p = Point(measurement)
            for k, v in (tags or {}).items():
                p = p.tag(k, str(v))
            for k, v in fields.items():
                p = p.field(k, v)
            p = p.time(datetime.now(TIMEZONE_GMT7))
            write_api.write(bucket=INFLUX_BUCKET, org=INFLUX_ORG, record=p)
            return
        except Exception as e:
            if attempt < max_retries:
                wait_time = 0.5 * (2 ** attempt)  # 0.5s, 1s
                logger.warning(f"InfluxDB write failed (attempt {attempt + 1}/{max_retries + 1}): {e}")
                time.sleep(wait_time)
            else:
                # Metering keeps running, the point is dropped
                logger.error(f"Failed to write '{measurement}' to InfluxDB after {max_retries + 1} attempts: {e}")


def query_influx(client, flux):
    """Run a Flux query and return (time, value) pairs for every record"""
    tables = client.query_api().query(flux, org=INFLUX_ORG)
    return [
        (record.get_time(), record.get_value())
        for table in tables
        for record in table.records
    ]

# ==========================
# MQTT FUNCTIONS
# ==========================

def init_mqtt(on_message_callback):
    """
    Create the MQTT client and subscribe to MQTT_TOPICS on connect.

    Args:
        on_message_callback: paho on_message handler
    """
    if not MQTT_BROKER:
        raise RuntimeError("MQTT_BROKER is not configured")

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    if MQTT_USER:
        client.username_pw_set(MQTT_USER, MQTT_PASS)
    client.on_connect = lambda c, u, f, rc, props: c.subscribe([(topic, 0) for topic in MQTT_TOPICS])
    client.on_message = on_message_callback
    client.connect(MQTT_BROKER, MQTT_PORT, 60)
    return client
