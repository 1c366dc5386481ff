"""
IoT telemetry publisher entrypoint.

CLI:
  iot-telemetry-publisher run --registry_id R --device_id D \\
      --private_key_file rsa_private.pem --algorithm RS256
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Optional

from telemetry_publisher.config import (
    MESSAGE_TYPES,
    SUPPORTED_ALGORITHMS,
    ConfigError,
    PublisherConfig,
)
from telemetry_publisher.credentials import SigningError
from telemetry_publisher.mqtt_client import BrokerConnectionError

logger = logging.getLogger(__name__)

# CLI flag -> config key
_FLAG_KEYS = {
    "project_id": "IOT_PROJECT_ID",
    "cloud_region": "IOT_CLOUD_REGION",
    "registry_id": "IOT_REGISTRY_ID",
    "device_id": "IOT_DEVICE_ID",
    "private_key_file": "IOT_PRIVATE_KEY_FILE",
    "algorithm": "IOT_ALGORITHM",
    "num_messages": "IOT_NUM_MESSAGES",
    "token_exp_mins": "IOT_TOKEN_EXP_MINS",
    "mqtt_bridge_hostname": "IOT_MQTT_HOST",
    "mqtt_bridge_port": "IOT_MQTT_PORT",
    "message_type": "IOT_MESSAGE_TYPE",
    "qos": "IOT_QOS",
    "ca_certs": "IOT_CA_CERTS",
    "publish_interval": "IOT_PUBLISH_INTERVAL_S",
}


def get_version_string() -> str:
    try:
        return pkg_version("iot-telemetry-publisher")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _install_signal_handlers(cancel: threading.Event) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; draining", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_scheduler(cfg: PublisherConfig, cancel: Optional[threading.Event] = None):
    """Wire issuer, connection manager and composer for `cfg`."""
    from telemetry_publisher.credentials import CredentialIssuer
    from telemetry_publisher.mqtt_client import ConnectionManager
    from telemetry_publisher.mqtt_topics import DevicePath
    from telemetry_publisher.payload import MessageComposer
    from telemetry_publisher.scheduler import PublishJob, PublishScheduler

    device = DevicePath(cfg.project_id, cfg.cloud_region, cfg.registry_id, cfg.device_id)
    connections = ConnectionManager(
        cfg.mqtt_host,
        cfg.mqtt_port,
        device.client_id,
        ca_certs=cfg.ca_certs,
        keepalive=cfg.keepalive,
    )
    connections.add_listener(
        lambda event, handle, detail: logger.debug("%s %r %s", event, handle, detail or "")
    )
    job = PublishJob(
        target_count=cfg.num_messages,
        interval_s=cfg.publish_interval_s,
        rotation_threshold_s=cfg.token_validity_s,
    )
    return PublishScheduler(
        CredentialIssuer(cfg.private_key_file, cfg.algorithm),
        connections,
        MessageComposer(cfg.registry_id, cfg.device_id),
        identity=cfg.project_id,
        topic=device.topic(cfg.message_type),
        job=job,
        validity_s=cfg.token_validity_s,
        qos=cfg.qos,
        cancel=cancel,
    )


def run_publisher(overrides: Optional[dict] = None) -> int:
    """
    Load config, publish the configured number of messages, close the connection.
    Returns process exit code.
    """
    from telemetry_publisher.config import load_config
    from telemetry_publisher.mqtt_topics import TopicSchemaError

    try:
        cfg = load_config(overrides)
        cancel = threading.Event()
        scheduler = build_scheduler(cfg, cancel)
    except (ConfigError, TopicSchemaError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    _install_signal_handlers(cancel)

    logger.info("============================================================")
    logger.info("IoT Telemetry Publisher")
    logger.info("Version: %s", cfg.version)
    logger.info("Device: %s", cfg.device_id)
    logger.info("Broker: %s:%d", cfg.mqtt_host, cfg.mqtt_port)
    logger.info("============================================================")

    try:
        summary = scheduler.run()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    except (SigningError, BrokerConnectionError) as exc:
        logger.error("Publisher stopped: %s", exc)
        return 1

    logger.info(
        "Done: %d message(s) published, %d credential rotation(s). Goodbye!",
        summary.published,
        summary.rotations,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="iot-telemetry-publisher",
        epilog="Flags override IOT_* environment variables and .env files.",
    )
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Publish telemetry messages to the MQTT bridge")
    run.add_argument("--project_id", help="Project id (JWT audience)")
    run.add_argument("--cloud_region", help="Cloud region")
    run.add_argument("--registry_id", help="Device registry id")
    run.add_argument("--device_id", help="Device id")
    run.add_argument("--private_key_file", help="Path to private key file")
    run.add_argument("--algorithm", choices=SUPPORTED_ALGORITHMS, help="JWT signing algorithm")
    run.add_argument("--num_messages", type=int, help="Number of messages to publish (default 20)")
    run.add_argument("--token_exp_mins", type=int, help="Minutes to JWT token expiration (default 20)")
    run.add_argument("--mqtt_bridge_hostname", help="MQTT bridge hostname")
    run.add_argument("--mqtt_bridge_port", type=int, help="MQTT bridge port (default 8883)")
    run.add_argument("--message_type", choices=MESSAGE_TYPES, help="Message type to publish")
    run.add_argument("--qos", type=int, choices=(0, 1), help="MQTT QoS (default 1)")
    run.add_argument("--ca_certs", help="CA bundle for TLS verification")
    run.add_argument(
        "--publish_interval",
        type=float,
        help="Seconds between messages (default depends on message type)",
    )
    run.add_argument("--log-level", dest="log_level", help="Log level (default INFO)")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    from telemetry_publisher.log_config import configure_logging

    configure_logging(getattr(args, "log_level", None))

    if args.cmd == "run":
        overrides = {key: getattr(args, flag) for flag, key in _FLAG_KEYS.items()}
        raise SystemExit(run_publisher(overrides))

    raise SystemExit(2)


if __name__ == "__main__":
    main()
