"""Remote command agent publishing shell results and host telemetry over MQTT."""

__version__ = "0.1.0"
