#!/usr/bin/env python3
"""
Bravia → Denon Volume Sync Manager

Keeps a Denon AV receiver's master volume in step with a Sony Bravia TV.
The TV is polled over its JSON-RPC HTTP API (authenticated with a pre-shared
key) and the receiver is driven over its telnet-style ASCII control protocol.

Usage:
    volume_sync_manager.py config.json              # Start daemon
    volume_sync_manager.py --validate config.json   # Validate configuration
    volume_sync_manager.py --once config.json       # Run single sync cycle
"""

import argparse
import json
import logging
import math
import os
import signal
import socket
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import requests
import urllib3

# Suppress SSL warnings for TVs with self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

VERSION = "1.0.0"


# ============================================================================
# Exceptions
# ============================================================================


class VolumeSyncError(Exception):
    """Base class for all errors raised by the sync manager."""


class NetworkError(VolumeSyncError):
    """Connection, transport or HTTP status failure talking to a device."""


class EncodingError(VolumeSyncError):
    """A request or command could not be serialized."""


class ProtocolError(VolumeSyncError):
    """A device reply did not have the expected shape or values."""


class ReceiverUnreachableError(NetworkError):
    """The receiver could not be reached for its power query.

    Treated as fatal by the sync loop unless configured otherwise.
    """


# ============================================================================
# Configuration Data Classes
# ============================================================================


@dataclass
class TelevisionConfig:
    """
    Connection settings for the Sony Bravia TV.

    Attributes:
        host: TV IP address or hostname
        psk: Pre-shared key configured on the TV (sent as X-Auth-PSK)
        scheme: "http" or "https"
        port: Optional HTTP port (None for the scheme default)
        timeout: HTTP request timeout in seconds
    """

    host: str
    psk: str
    scheme: str = "http"
    port: Optional[int] = None
    timeout: float = 5.0

    @property
    def base_url(self) -> str:
        """Base URL of the TV's REST API, ending in a slash."""
        netloc = self.host if self.port is None else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}/sony/"


@dataclass
class ReceiverConfig:
    """
    Connection settings for the Denon receiver.

    Attributes:
        host: Receiver IP address or hostname
        port: Telnet control port
        connect_timeout: TCP connect timeout in seconds
        read_timeout: Deadline for reading a query reply, in seconds
    """

    host: str
    port: int = 23
    connect_timeout: float = 1.0
    read_timeout: float = 2.0


@dataclass
class ConfigurationRoot:
    """
    Top-level configuration object.

    Attributes:
        television: TV connection settings
        receiver: Receiver connection settings
        poll_interval: Seconds to wait before every sync cycle
        max_volume: Ceiling applied to the TV volume before it is sent on
        display_retry_delay: Extra seconds to wait after a TV failure or TV off
        receiver_retry_delay: Extra seconds to wait after a receiver failure or receiver off
        exit_on_receiver_unreachable: Stop the daemon when the receiver power query fails
        log_level: Python logging level (DEBUG, INFO, WARNING, ERROR)
        stats_interval: Seconds between statistics reports (None to disable, 0 for auto)
    """

    television: TelevisionConfig
    receiver: ReceiverConfig
    poll_interval: float = 1.0
    max_volume: int = 40
    display_retry_delay: float = 10.0
    receiver_retry_delay: float = 1.0
    exit_on_receiver_unreachable: bool = True
    log_level: str = "INFO"
    stats_interval: Optional[float] = None


# ============================================================================
# Configuration Loading and Validation
# ============================================================================

PSK_ENV_VAR = "BRAVIA_PSK"


def load_config(config_path: Path) -> ConfigurationRoot:
    """
    Load and parse JSON configuration file.

    The TV pre-shared key may be supplied through the BRAVIA_PSK environment
    variable instead of the file; the environment wins when both are set.

    Args:
        config_path: Path to JSON configuration file

    Returns:
        Parsed ConfigurationRoot object

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If JSON is invalid
        KeyError: If required fields are missing
    """
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    tv_data = data["television"]
    psk = os.environ.get(PSK_ENV_VAR) or tv_data["psk"]

    television = TelevisionConfig(
        host=tv_data["host"],
        psk=psk,
        scheme=tv_data.get("scheme", "http"),
        port=tv_data.get("port"),
        timeout=tv_data.get("timeout", 5.0),
    )

    rx_data = data["receiver"]
    receiver = ReceiverConfig(
        host=rx_data["host"],
        port=rx_data.get("port", 23),
        connect_timeout=rx_data.get("connect_timeout", 1.0),
        read_timeout=rx_data.get("read_timeout", 2.0),
    )

    config = ConfigurationRoot(
        television=television,
        receiver=receiver,
        poll_interval=data.get("poll_interval", 1.0),
        max_volume=data.get("max_volume", 40),
        display_retry_delay=data.get("display_retry_delay", 10.0),
        receiver_retry_delay=data.get("receiver_retry_delay", 1.0),
        exit_on_receiver_unreachable=data.get("exit_on_receiver_unreachable", True),
        log_level=data.get("log_level", "INFO"),
        stats_interval=data.get("stats_interval"),
    )

    return config


def validate_config(config: ConfigurationRoot) -> tuple[bool, list[str]]:
    """
    Validate configuration values.

    Args:
        config: Configuration to validate

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []
    tv = config.television
    rx = config.receiver

    # Television
    if not tv.host:
        errors.append("television.host must not be empty")
    if not tv.psk:
        errors.append(
            f"television.psk must not be empty (set it in the file or via {PSK_ENV_VAR})"
        )
    if tv.scheme not in ("http", "https"):
        errors.append(f"television.scheme must be 'http' or 'https', got: '{tv.scheme}'")
    if tv.port is not None and not (1 <= tv.port <= 65535):
        errors.append(f"television.port must be 1-65535, got: {tv.port}")
    if tv.timeout <= 0:
        errors.append(f"television.timeout must be > 0, got: {tv.timeout}")

    # Receiver
    if not rx.host:
        errors.append("receiver.host must not be empty")
    if not (1 <= rx.port <= 65535):
        errors.append(f"receiver.port must be 1-65535, got: {rx.port}")
    if rx.connect_timeout <= 0:
        errors.append(f"receiver.connect_timeout must be > 0, got: {rx.connect_timeout}")
    if rx.read_timeout <= 0:
        errors.append(f"receiver.read_timeout must be > 0, got: {rx.read_timeout}")

    # Loop timing
    for name in ("poll_interval", "display_retry_delay", "receiver_retry_delay"):
        value = getattr(config, name)
        if value < 0:
            errors.append(f"{name} must be >= 0, got: {value}")

    if isinstance(config.max_volume, bool) or not isinstance(config.max_volume, int):
        errors.append(f"max_volume must be an integer, got: {config.max_volume!r}")
    elif not (0 <= config.max_volume <= MAX_RECEIVER_VOLUME):
        errors.append(
            f"max_volume must be 0-{MAX_RECEIVER_VOLUME}, got: {config.max_volume}"
        )

    # Validate log_level
    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level not in valid_log_levels:
        errors.append(
            f"log_level must be one of {valid_log_levels}, got: '{config.log_level}'"
        )

    if config.stats_interval is not None and config.stats_interval < 0:
        errors.append(f"stats_interval must be >= 0, got: {config.stats_interval}")

    is_valid = len(errors) == 0
    return is_valid, errors


# ============================================================================
# Logging Setup
# ============================================================================


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure Python logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce connection pool noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ============================================================================
# Bravia JSON-RPC Client
# ============================================================================


class JsonRpcClient:
    """
    Minimal HTTP client for the Bravia REST API.

    Every call is one POST of a JSON envelope to ``<base_url><endpoint>``,
    authenticated with the X-Auth-PSK header. A persistent session keeps the
    HTTP connection alive between polls.
    """

    def __init__(self, base_url: str, psk: str, timeout: float = 5.0):
        """
        Initialize JSON-RPC client.

        Args:
            base_url: API base URL ending in a slash (e.g., "http://192.168.1.20/sony/")
            psk: Pre-shared key
            timeout: Request timeout in seconds
        """
        self.base_url = base_url
        self.timeout = timeout

        self.session = requests.Session()
        self.session.verify = False
        self.session.headers.update(
            {"Content-Type": "application/json", "X-Auth-PSK": psk}
        )

    def post(self, endpoint: str, request: dict[str, Any]) -> bytes:
        """
        POST a JSON-RPC request and return the raw response body.

        Args:
            endpoint: Service name appended to the base URL (e.g., "system")
            request: JSON-RPC envelope

        Returns:
            Raw response body

        Raises:
            EncodingError: If the request cannot be serialized
            NetworkError: On transport failure or non-2xx HTTP status
        """
        try:
            body = json.dumps(request)
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Cannot encode request for '{endpoint}': {e}") from e

        url = f"{self.base_url}{endpoint}"
        logging.debug(f"POST {url} {body}")

        try:
            response = self.session.post(url, data=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                logging.error(
                    f"TV rejected the pre-shared key (HTTP {status}). "
                    f"Check television.psk and the TV's IP control settings."
                )
            raise NetworkError(f"HTTP {status} from {url}") from e
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout ({self.timeout}s) posting to {url}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Error posting to {url}: {e}") from e

        logging.debug(f"Response from {url}: {response.content!r}")
        return response.content

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()


# ============================================================================
# Bravia Response Decoding
# ============================================================================


def _decode_result(raw: bytes, method: str) -> list:
    """
    Decode a JSON-RPC response body and return its non-empty ``result`` list.

    Raises:
        ProtocolError: If the body is not a JSON object with a result list,
            or if the TV answered with an error
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"{method}: response is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError(f"{method}: response is not a JSON object: {payload!r}")

    # The TV reports failures as {"error": [code, "message"], "id": n}
    error = payload.get("error")
    if error is not None:
        if isinstance(error, list) and len(error) >= 2:
            raise ProtocolError(f"{method}: TV returned error {error[0]}: {error[1]}")
        raise ProtocolError(f"{method}: TV returned error {error!r}")

    result = payload.get("result")
    if not isinstance(result, list) or not result:
        raise ProtocolError(f"{method}: invalid response: {payload!r}")

    return result


@dataclass
class PowerStatusResult:
    """
    Decoded ``getPowerStatus`` reply.

    Attributes:
        status: Raw status string reported by the TV
        is_on: True when the TV is active
    """

    status: str
    is_on: bool

    # Closed set of statuses the TV reports
    STATUSES = {"active": True, "standby": False}

    @classmethod
    def from_response(cls, raw: bytes) -> "PowerStatusResult":
        """
        Decode ``{"result": [{"status": "active"}], "id": 50}``.

        Raises:
            ProtocolError: If the shape is wrong or the status is unrecognized
        """
        result = _decode_result(raw, "getPowerStatus")

        entry = result[0]
        if not isinstance(entry, dict):
            raise ProtocolError(f"getPowerStatus: invalid result format: {entry!r}")

        status = entry.get("status")
        if not isinstance(status, str):
            raise ProtocolError("getPowerStatus: status not found")

        if status not in cls.STATUSES:
            raise ProtocolError(f"getPowerStatus: unrecognized status '{status}'")

        return cls(status=status, is_on=cls.STATUSES[status])


@dataclass
class VolumeInformation:
    """
    Decoded ``getVolumeInformation`` entry for one audio output.

    Attributes:
        target: Output name ("speaker", "headphone", ...)
        volume: Raw volume reported by the TV
        mute: Mute flag
    """

    target: str
    volume: float
    mute: bool

    @property
    def level(self) -> int:
        """Effective volume 0-100; a muted output reads as 0."""
        if self.mute:
            return 0
        return int(math.floor(self.volume))

    @classmethod
    def from_response(cls, raw: bytes) -> "VolumeInformation":
        """
        Decode ``{"result": [[{"target": "speaker", "volume": 3, "mute": false}]]}``.

        The speaker entry is used when the TV lists several outputs,
        otherwise the first entry.

        Raises:
            ProtocolError: On any missing or mistyped field
        """
        result = _decode_result(raw, "getVolumeInformation")

        outputs = result[0]
        if not isinstance(outputs, list) or not outputs:
            raise ProtocolError("getVolumeInformation: invalid volume info format")
        if not all(isinstance(output, dict) for output in outputs):
            raise ProtocolError("getVolumeInformation: invalid volume info structure")

        info = next(
            (output for output in outputs if output.get("target") == "speaker"),
            outputs[0],
        )

        volume = info.get("volume")
        if isinstance(volume, bool) or not isinstance(volume, (int, float)):
            raise ProtocolError("getVolumeInformation: volume not found or invalid type")
        if not (0 <= volume <= 100):
            raise ProtocolError(f"getVolumeInformation: volume out of range: {volume}")

        mute = info.get("mute")
        if not isinstance(mute, bool):
            raise ProtocolError(
                "getVolumeInformation: mute status not found or invalid type"
            )

        target = info.get("target")
        return cls(
            target=target if isinstance(target, str) else "",
            volume=volume,
            mute=mute,
        )


# ============================================================================
# Bravia TV Adapter
# ============================================================================


class BraviaTV:
    """Power and volume queries against a Bravia TV."""

    POWER_REQUEST_ID = 50
    VOLUME_REQUEST_ID = 33

    def __init__(self, client: JsonRpcClient):
        self.client = client

    @classmethod
    def from_config(cls, config: TelevisionConfig) -> "BraviaTV":
        """Create a TV adapter with its own JSON-RPC client."""
        return cls(JsonRpcClient(config.base_url, config.psk, config.timeout))

    @staticmethod
    def _request(method: str, request_id: int) -> dict[str, Any]:
        return {"method": method, "id": request_id, "params": [], "version": "1.0"}

    def get_power_status(self) -> bool:
        """
        Query whether the TV is on.

        Returns:
            True if the TV reports "active", False for "standby"

        Raises:
            NetworkError, EncodingError, ProtocolError
        """
        raw = self.client.post(
            "system", self._request("getPowerStatus", self.POWER_REQUEST_ID)
        )
        return PowerStatusResult.from_response(raw).is_on

    def get_volume(self) -> int:
        """
        Query the TV speaker volume.

        Returns:
            Volume 0-100, or 0 when muted

        Raises:
            NetworkError, EncodingError, ProtocolError
        """
        raw = self.client.post(
            "audio", self._request("getVolumeInformation", self.VOLUME_REQUEST_ID)
        )
        return VolumeInformation.from_response(raw).level

    def close(self):
        self.client.close()


# ============================================================================
# Denon Receiver Protocol
# ============================================================================

# https://assets.denon.com/documentmaster/uk/avr1713_avr1613_protocol_v860.pdf
CMD_POWER_QUERY = "PW?"
CMD_VOLUME_QUERY = "MV?"
CMD_VOLUME_SET = "MV"
VOLUME_PREFIX = "MV"
MAX_RECEIVER_VOLUME = 98


class ReceiverPowerState(Enum):
    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"


def parse_power_reply(reply: str) -> ReceiverPowerState:
    """Map a ``PW?`` reply ("PWON", "PWSTANDBY") to a power state."""
    if reply == "PWON":
        return ReceiverPowerState.ON
    if reply in ("PWSTANDBY", "PWOFF"):
        return ReceiverPowerState.OFF
    return ReceiverPowerState.UNKNOWN


def decode_volume_reply(reply: str) -> int:
    """
    Decode a ``MV?`` reply into a whole volume step.

    "MV07" -> 7. Three digits carry a half step ("MV455" is 45.5) and are
    floored. A missing or malformed reply decodes to 0.

    Args:
        reply: Reply line, with or without the "MV" prefix

    Returns:
        Receiver volume
    """
    digits = reply[len(VOLUME_PREFIX):] if reply.startswith(VOLUME_PREFIX) else reply
    digits = digits.strip()

    if not digits.isdigit() or not (1 <= len(digits) <= 3):
        logging.warning(f"Unexpected receiver volume reply '{reply}', assuming 0")
        return 0

    if len(digits) == 3:
        return int(digits[:2])
    return int(digits)


def encode_set_volume(level: int) -> str:
    """
    Build the command setting the receiver volume, e.g. 7 -> "MV07".

    Raises:
        EncodingError: If level is outside 0-98
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise EncodingError(f"Receiver volume must be an integer, got: {level!r}")
    if not (0 <= level <= MAX_RECEIVER_VOLUME):
        raise EncodingError(
            f"Receiver volume must be 0-{MAX_RECEIVER_VOLUME}, got: {level}"
        )
    return f"{CMD_VOLUME_SET}{level:02d}"


class DenonReceiver:
    """
    Client for the Denon telnet control protocol.

    Each command uses its own short-lived TCP connection: connect, write the
    CR LF terminated command, read one CR terminated reply for queries, close.
    """

    def __init__(
        self,
        host: str,
        port: int = 23,
        connect_timeout: float = 1.0,
        read_timeout: float = 2.0,
    ):
        """
        Initialize receiver client.

        Args:
            host: Receiver IP address or hostname
            port: Control port
            connect_timeout: TCP connect timeout in seconds
            read_timeout: Deadline for a query reply in seconds
        """
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

    @classmethod
    def from_config(cls, config: ReceiverConfig) -> "DenonReceiver":
        return cls(
            host=config.host,
            port=config.port,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )

    def send_command(self, command: str) -> str:
        """
        Send one command and, for queries, return the reply line.

        Args:
            command: ASCII command without terminator (e.g., "PW?", "MV35")

        Returns:
            Reply with surrounding whitespace stripped, or "" for commands
            without a "?" (no reply is read)

        Raises:
            EncodingError: If the command is empty or not printable ASCII
            NetworkError: On connect, write or read failure, or read timeout
        """
        if not command or not command.isascii() or not command.isprintable():
            raise EncodingError(f"Invalid receiver command: {command!r}")

        address = f"{self.host}:{self.port}"
        try:
            conn = socket.create_connection(
                (self.host, self.port), timeout=self.connect_timeout
            )
        except OSError as e:
            raise NetworkError(f"Connection error to {address}: {e}") from e

        with conn:
            try:
                conn.sendall(f"{command}\r\n".encode("ascii"))
            except OSError as e:
                raise NetworkError(f"Write error to {address}: {e}") from e
            logging.debug(f"Sent '{command}' to receiver {address}")

            if "?" not in command:
                return ""

            conn.settimeout(self.read_timeout)
            try:
                with conn.makefile("r", encoding="ascii", errors="replace", newline="\r") as reader:
                    line = reader.readline()
            except socket.timeout as e:
                raise NetworkError(
                    f"Read timeout ({self.read_timeout}s) waiting for '{command}' reply from {address}"
                ) from e
            except OSError as e:
                raise NetworkError(f"Read error from {address}: {e}") from e

        if not line:
            raise NetworkError(f"Receiver {address} closed connection without a reply")

        reply = line.strip()
        logging.debug(f"Receiver {address} replied '{reply}'")
        return reply

    def get_power(self) -> ReceiverPowerState:
        """Query the receiver's power state."""
        reply = self.send_command(CMD_POWER_QUERY)
        state = parse_power_reply(reply)
        if state is ReceiverPowerState.UNKNOWN:
            logging.warning(f"Unrecognized receiver power reply '{reply}'")
        return state

    def get_volume(self) -> int:
        """Query the receiver's master volume."""
        return decode_volume_reply(self.send_command(CMD_VOLUME_QUERY))

    def set_volume(self, level: int) -> None:
        """Set the receiver's master volume."""
        self.send_command(encode_set_volume(level))


# ============================================================================
# Sync Cycle
# ============================================================================


class CycleStatus(Enum):
    """How a sync cycle ended."""

    SYNCED = "synced"
    UNCHANGED = "unchanged"
    TV_OFF = "tv_off"
    TV_ERROR = "tv_error"
    RECEIVER_OFF = "receiver_off"
    RECEIVER_ERROR = "receiver_error"
    SET_ERROR = "set_error"


@dataclass
class CycleResult:
    """
    Outcome of one sync cycle.

    Attributes:
        status: Where the cycle stopped
        delay: Extra seconds to wait before the next cycle
        tv_volume: Volume read from the TV, if reached
        receiver_volume: Volume read from the receiver, if reached
        target_volume: Clamped volume the receiver should have, if reached
    """

    status: CycleStatus
    delay: float = 0.0
    tv_volume: Optional[int] = None
    receiver_volume: Optional[int] = None
    target_volume: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status in (CycleStatus.SYNCED, CycleStatus.UNCHANGED)


def clamp_volume(volume: int, max_volume: int) -> int:
    """Limit a TV volume to the configured ceiling."""
    return min(volume, max_volume)


# ============================================================================
# SyncManager Class (Daemon Loop & Signal Handling)
# ============================================================================


class SyncManager:
    """
    Polls the TV and drives the receiver volume toward it.

    The TV is authoritative; the receiver is never read back into the TV.
    """

    def __init__(
        self,
        config: ConfigurationRoot,
        tv: Optional[BraviaTV] = None,
        receiver: Optional[DenonReceiver] = None,
    ):
        """
        Initialize SyncManager.

        Args:
            config: Configuration root object
            tv: TV adapter (created from config if None)
            receiver: Receiver client (created from config if None)
        """
        self.config = config
        self.tv = tv if tv is not None else BraviaTV.from_config(config.television)
        self.receiver = (
            receiver if receiver is not None else DenonReceiver.from_config(config.receiver)
        )

        self._stop_event = threading.Event()
        self.cycle_count = 0
        self.update_count = 0
        self.status_counts: dict[CycleStatus, int] = {status: 0 for status in CycleStatus}

        # Runtime statistics tracking
        self.start_time: Optional[float] = None
        self.last_stats_time: Optional[float] = None

        # None = disabled, 0 = auto, >0 = explicit
        if config.stats_interval is None:
            self.stats_interval: Optional[float] = None
        elif config.stats_interval == 0:
            self.stats_interval = min(60.0, config.poll_interval * 60)
        else:
            self.stats_interval = float(config.stats_interval)

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def sync_once(self) -> CycleResult:
        """
        Run one sync cycle.

        Returns:
            CycleResult describing where the cycle stopped and how long to back off

        Raises:
            ReceiverUnreachableError: If the receiver power query fails and
                exit_on_receiver_unreachable is set
        """
        display_delay = self.config.display_retry_delay
        receiver_delay = self.config.receiver_retry_delay

        # TV power
        logging.debug("Checking TV power status...")
        try:
            tv_on = self.tv.get_power_status()
        except VolumeSyncError as e:
            logging.error(f"Error checking TV power: {e}")
            return CycleResult(CycleStatus.TV_ERROR, display_delay)

        if not tv_on:
            logging.info("TV is not ON.")
            return CycleResult(CycleStatus.TV_OFF, display_delay)

        # TV volume
        try:
            tv_volume = self.tv.get_volume()
        except VolumeSyncError as e:
            logging.error(f"Error getting TV volume: {e}")
            return CycleResult(CycleStatus.TV_ERROR, display_delay)
        logging.info(f"TV is ON, volume is {tv_volume}")

        # Receiver power
        try:
            receiver_power = self.receiver.get_power()
        except NetworkError as e:
            if self.config.exit_on_receiver_unreachable:
                raise ReceiverUnreachableError(
                    f"Receiver unreachable while checking power: {e}"
                ) from e
            logging.error(f"Error checking receiver status: {e}")
            return CycleResult(CycleStatus.RECEIVER_ERROR, receiver_delay, tv_volume)

        if receiver_power is not ReceiverPowerState.ON:
            logging.info("Receiver is not ON.")
            return CycleResult(CycleStatus.RECEIVER_OFF, receiver_delay, tv_volume)

        # Receiver volume
        try:
            receiver_volume = self.receiver.get_volume()
        except VolumeSyncError as e:
            logging.error(f"Error getting receiver volume: {e}")
            return CycleResult(CycleStatus.RECEIVER_ERROR, receiver_delay, tv_volume)
        logging.info(f"Receiver is ON, volume is {receiver_volume}")

        # Reconcile
        target = clamp_volume(tv_volume, self.config.max_volume)
        if receiver_volume == target:
            return CycleResult(
                CycleStatus.UNCHANGED, 0.0, tv_volume, receiver_volume, target
            )

        logging.info(f"→ Setting receiver volume to {target}")
        try:
            self.receiver.set_volume(target)
        except VolumeSyncError as e:
            logging.error(f"Error setting receiver volume: {e}")
            return CycleResult(
                CycleStatus.SET_ERROR, receiver_delay, tv_volume, receiver_volume, target
            )

        return CycleResult(CycleStatus.SYNCED, 0.0, tv_volume, receiver_volume, target)

    def _record(self, result: CycleResult):
        self.status_counts[result.status] += 1
        if result.status is CycleStatus.SYNCED:
            self.update_count += 1

    def _format_uptime(self, seconds: float) -> str:
        """
        Format uptime in human-readable format.

        Args:
            seconds: Uptime in seconds

        Returns:
            Formatted string (e.g., "2h 15m 30s" or "45m 12s" or "23s")
        """
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)

        if hours > 0:
            return f"{hours}h {minutes}m {secs}s"
        elif minutes > 0:
            return f"{minutes}m {secs}s"
        else:
            return f"{secs}s"

    def _print_statistics(self):
        """Log runtime statistics summary."""
        if self.start_time is None:
            return

        uptime = time.time() - self.start_time

        logging.info("=" * 70)
        logging.info("RUNTIME STATISTICS")
        logging.info("=" * 70)
        logging.info(f"Uptime:           {self._format_uptime(uptime)}")
        logging.info(f"Sync cycles:      {self.cycle_count}")
        logging.info(f"Volume updates:   {self.update_count}")
        logging.info("-" * 70)
        for status, count in self.status_counts.items():
            logging.info(f"  {status.value:20s} {count:6d}")
        logging.info("=" * 70)

    def stop(self):
        """Ask the run loop to exit; interrupts any pending wait."""
        self._stop_event.set()

    def _shutdown(self, signum, frame):
        """
        Signal handler for graceful shutdown.

        Args:
            signum: Signal number
            frame: Current stack frame
        """
        signal_names = {signal.SIGINT: "SIGINT", signal.SIGTERM: "SIGTERM"}
        signal_name = signal_names.get(signum, f"signal {signum}")
        logging.info(f"Received interrupt signal ({signal_name})")
        logging.info("Shutting down gracefully...")
        self.stop()

    def run(self, max_cycles: Optional[int] = None):
        """
        Sync loop - runs until stop() is called or max_cycles cycles ran.

        Args:
            max_cycles: Optional cycle limit (None runs until stopped)

        Raises:
            ReceiverUnreachableError: If the receiver power query fails and
                exit_on_receiver_unreachable is set
        """
        self.start_time = time.time()
        self.last_stats_time = self.start_time

        if self.stats_interval is None:
            logging.info("Statistics reporting: disabled")
        else:
            logging.info(f"Statistics will be reported every {self.stats_interval:.0f}s")

        try:
            while self.running:
                if max_cycles is not None and self.cycle_count >= max_cycles:
                    break

                # Small delay to avoid overwhelming the devices
                if self._stop_event.wait(self.config.poll_interval):
                    break

                self.cycle_count += 1
                try:
                    result = self.sync_once()
                except ReceiverUnreachableError as e:
                    logging.error(f"{e}. Stopping.")
                    raise
                except Exception as e:
                    logging.error(f"Unexpected error during sync cycle {self.cycle_count}: {e}")
                    result = CycleResult(
                        CycleStatus.TV_ERROR, self.config.display_retry_delay
                    )

                self._record(result)

                if (
                    self.stats_interval is not None
                    and time.time() - self.last_stats_time >= self.stats_interval
                ):
                    self._print_statistics()
                    self.last_stats_time = time.time()

                if result.delay > 0 and (max_cycles is None or self.cycle_count < max_cycles):
                    self._stop_event.wait(result.delay)

        finally:
            if self.stats_interval is not None and self.cycle_count > 0:
                logging.info("")
                logging.info("FINAL STATISTICS SUMMARY")
                self._print_statistics()

    def serve(self):
        """
        Run the sync loop with SIGINT/SIGTERM wired to a graceful stop.
        """
        signal.signal(signal.SIGINT, self._shutdown)
        signal.signal(signal.SIGTERM, self._shutdown)

        logging.info(f"Starting sync loop (interval: {self.config.poll_interval}s)")
        try:
            self.run()
        finally:
            self.close()
            logging.info("Sync loop stopped. Goodbye!")

    def close(self):
        """Release the TV HTTP session."""
        self.tv.close()


# ============================================================================
# Main Entry Point (CLI Implementation)
# ============================================================================


def main(argv: Optional[list[str]] = None):
    """Main entry point for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Bravia → Denon Volume Sync Manager - Keep a Denon receiver's\n"
        "volume in step with a Sony Bravia TV.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  volume_sync_manager.py config.json              Start daemon with config
  volume_sync_manager.py --validate config.json   Validate configuration
  volume_sync_manager.py --once config.json       Run single sync cycle

Configuration:
  See config.example.json for configuration format and options.
  The TV pre-shared key can also be given in the {PSK_ENV_VAR}
  environment variable.

Signals:
  SIGINT/SIGTERM - Graceful shutdown

Exit codes:
  0 success, 1 configuration error or failed cycle, 2 receiver unreachable
        """,
    )

    parser.add_argument(
        "-v",
        "--validate",
        action="store_true",
        help="Validate configuration and exit (don't start daemon)",
    )

    parser.add_argument(
        "-V", "--version", action="store_true", help="Show version and exit"
    )

    parser.add_argument(
        "-1",
        "--once",
        action="store_true",
        help="Run sync once and exit (no daemon mode)",
    )

    # Positional argument (optional when using --version)
    parser.add_argument(
        "config_file",
        metavar="CONFIG_FILE",
        type=str,
        nargs="?",
        help="Path to JSON configuration file",
    )

    args = parser.parse_args(argv)

    if args.version:
        print(f"Volume Sync Manager v{VERSION}")
        print(f"Python {sys.version.split()[0]}")
        return 0

    # Config file is required for all other operations
    if not args.config_file:
        parser.error("CONFIG_FILE is required (unless using --version)")
        return 1

    config_path = Path(args.config_file)

    if not config_path.exists():
        print(f"✗ Configuration file not found: {config_path}", file=sys.stderr)
        print(
            "  See config.example.json for an example configuration.", file=sys.stderr
        )
        return 1

    try:
        config = load_config(config_path)
    except json.JSONDecodeError as e:
        print("✗ Configuration file has invalid JSON syntax:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print(f"  Line {e.lineno}, Column {e.colno}", file=sys.stderr)
        return 1
    except KeyError as e:
        print("✗ Configuration file is missing required field:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print(
            "  See config.example.json for the complete configuration structure.",
            file=sys.stderr,
        )
        return 1
    except Exception as e:
        print("✗ Error loading configuration file:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    is_valid, errors = validate_config(config)

    if args.validate:
        print(f"Validating configuration file: {config_path}")
        if is_valid:
            print("✓ Configuration is valid")
            print(f"  - TV: {config.television.base_url}")
            print(f"  - Receiver: {config.receiver.host}:{config.receiver.port}")
            print(f"  - Poll interval: {config.poll_interval} seconds")
            print(f"  - Volume ceiling: {config.max_volume}")
            return 0
        else:
            print("✗ Configuration is invalid:")
            for error in errors:
                print(f"  - {error}")
            return 1

    if not is_valid:
        print("✗ Configuration is invalid:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        print(
            "\nRun with --validate flag to see detailed validation results.",
            file=sys.stderr,
        )
        return 1

    setup_logging(config.log_level)
    logging.info(f"Starting Volume Sync Manager v{VERSION}")
    logging.info(
        f"TV {config.television.base_url} → receiver "
        f"{config.receiver.host}:{config.receiver.port}, volume ceiling {config.max_volume}"
    )

    manager = SyncManager(config)

    if args.once:
        logging.info("One-shot mode: running single sync cycle")
        try:
            result = manager.sync_once()
        except ReceiverUnreachableError as e:
            logging.error(str(e))
            return 2
        finally:
            manager.close()

        logging.info(f"Sync cycle finished: {result.status.value}")
        return 0 if result.ok else 1

    try:
        manager.serve()
    except ReceiverUnreachableError:
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
