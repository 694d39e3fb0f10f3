"""Configuration loader for device-agent."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from . import constants

# Buffer bounds for the two known deployments: a full-size agent and a
# constrained monitor. Explicit values in [commands] override the profile.
COMMAND_PROFILES: Dict[str, Dict[str, int]] = {
    "standard": {
        "output_limit_bytes": 90 * 1024,
        "response_limit_bytes": 96 * 1024,
    },
    "constrained": {
        "output_limit_bytes": 1024,
        "response_limit_bytes": 2048,
    },
}

DEFAULT_COMMAND_PROFILE = "standard"

# Smallest response buffer that still fits the record skeleton, a full client
# token and the longest fixed stderr message.
MIN_RESPONSE_LIMIT_BYTES = 256


@dataclass(slots=True)
class CloudConfig:
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60
    ca_path: Optional[Path] = None
    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None

    @property
    def tls_enabled(self) -> bool:
        return self.ca_path is not None or self.cert_path is not None


@dataclass(slots=True)
class DeviceConfig:
    device_id: Optional[str] = None
    identity_path: Path = constants.DEFAULT_IDENTITY_PATH
    namespace: str = constants.DEFAULT_TOPIC_NAMESPACE


@dataclass(slots=True)
class CommandConfig:
    profile: str = DEFAULT_COMMAND_PROFILE
    max_message_bytes: int = 1024
    max_token_bytes: int = 63
    max_script_bytes: int = 511
    output_limit_bytes: int = 90 * 1024
    response_limit_bytes: int = 96 * 1024
    fallback_on_empty_output: bool = False
    fallback_on_empty_script: bool = False
    examples_path: Optional[Path] = None
    shell: str = constants.DEFAULT_SHELL
    timeout_seconds: float = 0.0  # 0 disables the run-time bound
    qos: int = 0


@dataclass(slots=True)
class TelemetryConfig:
    enabled: bool = False
    interval_seconds: float = constants.DEFAULT_TELEMETRY_INTERVAL_SECONDS
    topic: str = constants.DEFAULT_TELEMETRY_TOPIC
    device_label: Optional[str] = None  # defaults to the resolved device id
    proc_stat_path: Path = Path("/proc/stat")
    meminfo_path: Path = Path("/proc/meminfo")


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False
    max_bytes: int = 1_000_000
    backup_count: int = 3


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class AgentConfig:
    cloud: CloudConfig
    device: DeviceConfig
    commands: CommandConfig
    telemetry: TelemetryConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _optional_path(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return Path(value).expanduser()


def _optional_str(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_config(path: Optional[Path] = None) -> AgentConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "cloud": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": "60",
            },
            "device": {
                "identity_path": str(constants.DEFAULT_IDENTITY_PATH),
                "namespace": constants.DEFAULT_TOPIC_NAMESPACE,
            },
            "commands": {
                "profile": DEFAULT_COMMAND_PROFILE,
                "max_message_bytes": "1024",
                "max_token_bytes": "63",
                "max_script_bytes": "511",
                "fallback_on_empty_output": "false",
                "fallback_on_empty_script": "false",
                "shell": constants.DEFAULT_SHELL,
                "timeout_seconds": "0",
                "qos": "0",
            },
            "telemetry": {
                "enabled": "false",
                "interval_seconds": str(constants.DEFAULT_TELEMETRY_INTERVAL_SECONDS),
                "topic": constants.DEFAULT_TELEMETRY_TOPIC,
                "proc_stat_path": "/proc/stat",
                "meminfo_path": "/proc/meminfo",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
                "max_bytes": "1000000",
                "backup_count": "3",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("cloud", "broker_host")
    broker_port_value = parser.getint(
        "cloud", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("cloud", "broker_host", host_part)
            parser.set("cloud", "broker_port", str(parsed_port))

    cloud = CloudConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=_optional_str(parser.get("cloud", "username", fallback=None)),
        password=parser.get("cloud", "password", fallback=None),
        client_id=_optional_str(parser.get("cloud", "client_id", fallback=None)),
        keepalive=max(5, parser.getint("cloud", "keepalive", fallback=60)),
        ca_path=_optional_path(parser.get("cloud", "ca_path", fallback=None)),
        cert_path=_optional_path(parser.get("cloud", "cert_path", fallback=None)),
        key_path=_optional_path(parser.get("cloud", "key_path", fallback=None)),
    )

    device = DeviceConfig(
        device_id=_optional_str(parser.get("device", "device_id", fallback=None)),
        identity_path=Path(parser.get("device", "identity_path")).expanduser(),
        namespace=parser.get("device", "namespace").strip("/")
        or constants.DEFAULT_TOPIC_NAMESPACE,
    )

    profile_name = parser.get("commands", "profile", fallback=DEFAULT_COMMAND_PROFILE)
    profile_name = profile_name.strip().lower()
    if profile_name not in COMMAND_PROFILES:
        profile_name = DEFAULT_COMMAND_PROFILE
    profile = COMMAND_PROFILES[profile_name]

    commands = CommandConfig(
        profile=profile_name,
        max_message_bytes=max(
            16, parser.getint("commands", "max_message_bytes", fallback=1024)
        ),
        max_token_bytes=max(
            0, parser.getint("commands", "max_token_bytes", fallback=63)
        ),
        max_script_bytes=max(
            0, parser.getint("commands", "max_script_bytes", fallback=511)
        ),
        output_limit_bytes=max(
            1,
            parser.getint(
                "commands",
                "output_limit_bytes",
                fallback=profile["output_limit_bytes"],
            ),
        ),
        response_limit_bytes=max(
            MIN_RESPONSE_LIMIT_BYTES,
            parser.getint(
                "commands",
                "response_limit_bytes",
                fallback=profile["response_limit_bytes"],
            ),
        ),
        fallback_on_empty_output=parser.getboolean(
            "commands", "fallback_on_empty_output", fallback=False
        ),
        fallback_on_empty_script=parser.getboolean(
            "commands", "fallback_on_empty_script", fallback=False
        ),
        examples_path=_optional_path(
            parser.get("commands", "examples_path", fallback=None)
        ),
        shell=parser.get("commands", "shell", fallback=constants.DEFAULT_SHELL),
        timeout_seconds=max(
            0.0, parser.getfloat("commands", "timeout_seconds", fallback=0.0)
        ),
        qos=max(0, min(2, parser.getint("commands", "qos", fallback=0))),
    )

    telemetry = TelemetryConfig(
        enabled=parser.getboolean("telemetry", "enabled", fallback=False),
        interval_seconds=max(
            1.0,
            parser.getfloat(
                "telemetry",
                "interval_seconds",
                fallback=constants.DEFAULT_TELEMETRY_INTERVAL_SECONDS,
            ),
        ),
        topic=parser.get("telemetry", "topic", fallback=constants.DEFAULT_TELEMETRY_TOPIC),
        device_label=_optional_str(
            parser.get("telemetry", "device_label", fallback=None)
        ),
        proc_stat_path=Path(parser.get("telemetry", "proc_stat_path")),
        meminfo_path=Path(parser.get("telemetry", "meminfo_path")),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(parser.get("logging", "path", fallback=None)),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        max_bytes=max(
            64 * 1024, parser.getint("logging", "max_bytes", fallback=1_000_000)
        ),
        backup_count=max(0, parser.getint("logging", "backup_count", fallback=3)),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=max(0, parser.getint("health", "port", fallback=0)),
    )

    return AgentConfig(
        cloud=cloud,
        device=device,
        commands=commands,
        telemetry=telemetry,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: AgentConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
