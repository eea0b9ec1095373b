"""Configuration loading and validation."""

from dataclasses import dataclass
from pathlib import Path

import yaml

from .bits import FieldLocation
from .framing import FramingConfig, ModbusRtuFraming, RawFraming, SlipFraming, parse_delimiter_hex

FRAMING_MODES = ("raw", "delimiter", "slip", "modbus_rtu")


@dataclass
class SourceConfig:
    url: str
    baud: int = 115200


@dataclass
class MqttConfig:
    broker: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    root_topic: str = "serialframe"
    session_id: str = "capture"
    qos: int = 0


@dataclass
class FramingSettings:
    framing: FramingConfig
    min_length: int = 1
    frame_id: FieldLocation | None = None
    source_address: FieldLocation | None = None


@dataclass
class Config:
    framing: FramingSettings
    source: SourceConfig | None = None
    mqtt: MqttConfig | None = None
    log_level: str = "INFO"


def framing_from_dict(raw: dict) -> FramingConfig:
    """Build a framing config from its mapping form.

    Raises ValueError for an unknown mode or invalid values.
    """
    mode = raw.get("mode", "raw")
    if mode in ("raw", "delimiter"):
        delimiter = raw.get("delimiter", "0A")
        return RawFraming(
            delimiter=parse_delimiter_hex(str(delimiter)),
            max_length=int(raw.get("max_length", 1024)),
            include_delimiter=bool(raw.get("include_delimiter", False)),
        )
    if mode == "slip":
        return SlipFraming()
    if mode == "modbus_rtu":
        address = raw.get("device_address")
        return ModbusRtuFraming(
            device_address=int(address) if address is not None else None,
            validate_crc=bool(raw.get("validate_crc", True)),
        )
    raise ValueError(f"unknown framing mode {mode!r}, expected one of {', '.join(FRAMING_MODES)}")


def _field_location(raw: dict) -> FieldLocation:
    return FieldLocation(
        start_byte=int(raw.get("start_byte", 0)),
        num_bytes=int(raw.get("num_bytes", 1)),
        big_endian=bool(raw.get("big_endian", True)),
    )


def load_config(path: Path) -> Config:
    """Load and validate configuration from YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    errors = []

    framing_raw = raw.get("framing")
    framing = None
    if not isinstance(framing_raw, dict):
        errors.append("missing 'framing' section")
    else:
        try:
            framing = framing_from_dict(framing_raw)
        except (TypeError, ValueError) as e:
            errors.append(f"framing: {e}")

    locations = {}
    for key in ("frame_id", "source_address"):
        if raw.get(key) is None:
            continue
        try:
            locations[key] = _field_location(raw[key])
        except (TypeError, ValueError, AttributeError) as e:
            errors.append(f"{key}: {e}")

    source = None
    if "source" in raw:
        source_raw = raw["source"] or {}
        if "url" not in source_raw:
            errors.append("source.url is required")
        else:
            source = SourceConfig(url=source_raw["url"], baud=source_raw.get("baud", 115200))

    mqtt = None
    if "mqtt" in raw:
        mqtt_raw = raw["mqtt"] or {}
        if "broker" not in mqtt_raw:
            errors.append("mqtt.broker is required")
        elif mqtt_raw.get("qos", 0) not in (0, 1, 2):
            errors.append(f"mqtt.qos must be 0, 1 or 2, got {mqtt_raw['qos']!r}")
        else:
            mqtt = MqttConfig(
                broker=mqtt_raw["broker"],
                port=mqtt_raw.get("port", 1883),
                username=mqtt_raw.get("username"),
                password=mqtt_raw.get("password"),
                root_topic=mqtt_raw.get("root_topic", "serialframe"),
                session_id=mqtt_raw.get("session_id", "capture"),
                qos=mqtt_raw.get("qos", 0),
            )

    min_length = 1
    if isinstance(framing_raw, dict):
        min_length = framing_raw.get("min_length", 1)
        if not isinstance(min_length, int) or min_length < 0:
            errors.append(f"framing.min_length must be a non-negative integer, got {min_length!r}")

    log_level = (raw.get("logging") or {}).get("level", "INFO")

    if errors:
        raise ValueError(f"configuration validation failed: {'; '.join(errors)}")

    return Config(
        framing=FramingSettings(
            framing=framing,
            min_length=min_length,
            frame_id=locations.get("frame_id"),
            source_address=locations.get("source_address"),
        ),
        source=source,
        mqtt=mqtt,
        log_level=str(log_level).upper(),
    )
