"""
MQTT connection manager for the telemetry publisher.

Owns the single broker session for one device. connect() blocks until CONNACK,
rotate() closes the current session before opening one with a fresh
credential, publish() is fire-and-forget. Lifecycle events (connected, closed,
error) are delivered to listeners for observation only.
"""

from __future__ import annotations

import functools
import itertools
import logging
import ssl
import threading
from pathlib import Path
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from telemetry_publisher.credentials import Credential

logger = logging.getLogger(__name__)

# The bridge ignores the username but rejects an empty one.
BRIDGE_USERNAME = "unused"

EVENT_CONNECTED = "connected"
EVENT_CLOSED = "closed"
EVENT_ERROR = "error"

LifecycleListener = Callable[[str, "ConnectionHandle", Optional[str]], None]


class BrokerConnectionError(ConnectionError):
    """Raised when a broker session cannot be established or is lost."""


class RotationError(BrokerConnectionError):
    """Raised when reconnecting with a rotated credential fails."""


class ConnectionHandle:
    """
    One broker session. Created by ConnectionManager; callers only read it.

    serial increases by one per session so handle identity is observable
    across rotations.
    """

    def __init__(self, serial: int, credential: Credential) -> None:
        self.serial = serial
        self.credential = credential
        self._client: Optional[mqtt.Client] = None
        self._active = False
        self._closing = False
        self._closed = False
        self._acked = threading.Event()
        self._connack_failure: Optional[str] = None
        self._failure: Optional[str] = None
        self._pending: set[int] = set()
        # PUBACKs that arrived before publish() registered their mid.
        self._early_acks: set[int] = set()
        self._cond = threading.Condition()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failure(self) -> Optional[str]:
        """Reason the session failed after it was established, if it did."""
        return self._failure

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    def __repr__(self) -> str:
        state = "active" if self._active else ("closed" if self._closed else "inactive")
        return f"<ConnectionHandle #{self.serial} {state}>"


class ConnectionManager:
    def __init__(
        self,
        host: str,
        port: int,
        client_id: str,
        *,
        ca_certs: Optional[Path | str] = None,
        keepalive: int = 60,
        connect_timeout_s: float = 30.0,
        drain_timeout_s: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.ca_certs = str(ca_certs) if ca_certs else None
        self.keepalive = keepalive
        self.connect_timeout_s = connect_timeout_s
        self.drain_timeout_s = drain_timeout_s

        self._serials = itertools.count(1)
        self._active: Optional[ConnectionHandle] = None
        self._listeners: list[LifecycleListener] = []
        self._lock = threading.Lock()

    @property
    def active_handle(self) -> Optional[ConnectionHandle]:
        return self._active

    def add_listener(self, listener: LifecycleListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: str, handle: ConnectionHandle, detail: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, handle, detail)
            except Exception:
                logger.exception("Lifecycle listener failed for event %s", event)

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(
        self,
        handle: ConnectionHandle,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            handle._connack_failure = str(reason_code)
            logger.error("MQTT connect failed rc=%s (connection #%d)", reason_code, handle.serial)
            self._emit(EVENT_ERROR, handle, str(reason_code))
        else:
            logger.info("Connected to MQTT broker as %s (connection #%d)", self.client_id, handle.serial)
            self._emit(EVENT_CONNECTED, handle)
        handle._acked.set()

    def _on_disconnect(
        self,
        handle: ConnectionHandle,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if handle._closing:
            return
        handle._failure = f"connection lost: {reason_code}"
        logger.warning("Unexpected disconnect rc=%s (connection #%d)", reason_code, handle.serial)
        self._emit(EVENT_ERROR, handle, handle._failure)
        # Unblock a connect() still waiting for CONNACK and a close() draining.
        handle._acked.set()
        with handle._cond:
            handle._cond.notify_all()

    def _on_publish(
        self,
        handle: ConnectionHandle,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_code: Any = None,
        properties: Any = None,
    ) -> None:
        # Called with paho's outgoing-message mutex held.
        with handle._cond:
            if mid in handle._pending:
                handle._pending.discard(mid)
                handle._cond.notify_all()
            else:
                handle._early_acks.add(mid)

    # -------------------------
    # Session lifecycle
    # -------------------------
    def _tls_context(self) -> ssl.SSLContext:
        """Verifying TLS 1.2 context, with the configured CA bundle if any."""
        context = ssl.create_default_context(cafile=self.ca_certs)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.maximum_version = ssl.TLSVersion.TLSv1_2
        return context

    def _build_client(self, handle: ConnectionHandle) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(BRIDGE_USERNAME, handle.credential.token)
        client.tls_set_context(self._tls_context())

        client.on_connect = functools.partial(self._on_connect, handle)
        client.on_disconnect = functools.partial(self._on_disconnect, handle)
        client.on_publish = functools.partial(self._on_publish, handle)
        return client

    def _teardown(self, handle: ConnectionHandle) -> None:
        handle._active = False
        handle._closing = True
        client = handle._client
        if client is None:
            handle._closed = True
            return
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as exc:
            logger.warning("Error tearing down connection #%d: %s", handle.serial, exc)
        finally:
            handle._closed = True

    def connect(self, credential: Credential) -> ConnectionHandle:
        """
        Open a session with `credential` and wait for the broker to acknowledge it.
        Raises BrokerConnectionError on network, TLS or authentication failure.
        """
        with self._lock:
            if self._active is not None and self._active.active:
                raise BrokerConnectionError(
                    f"connection #{self._active.serial} is still active; rotate or close it first"
                )

            handle = ConnectionHandle(next(self._serials), credential)
            logger.info(
                "Connecting to %s:%d as %s (connection #%d)",
                self.host,
                self.port,
                self.client_id,
                handle.serial,
            )

            try:
                client = self._build_client(handle)
                handle._client = client
                client.connect(self.host, self.port, keepalive=self.keepalive)
            except (OSError, ValueError) as exc:
                self._teardown(handle)
                self._emit(EVENT_ERROR, handle, str(exc))
                raise BrokerConnectionError(
                    f"Cannot connect to MQTT broker {self.host}:{self.port}: {exc}"
                ) from exc

            client.loop_start()

            if not handle._acked.wait(timeout=self.connect_timeout_s):
                self._teardown(handle)
                self._emit(EVENT_ERROR, handle, "connect timeout")
                raise BrokerConnectionError(
                    f"No CONNACK from {self.host}:{self.port} within {self.connect_timeout_s:.0f}s"
                )

            reason = handle._connack_failure or handle._failure
            if reason is not None:
                self._teardown(handle)
                raise BrokerConnectionError(f"MQTT broker refused connection: {reason}")

            handle._active = True
            self._active = handle
            return handle

    def publish(self, handle: ConnectionHandle, topic: str, payload: Any, qos: int = 1) -> int:
        """
        Queue one message on `handle`. Delivery failures are reported through
        lifecycle events and handle.failure, not raised here.
        Returns the message id.
        """
        if not handle.active or handle._client is None:
            raise BrokerConnectionError(f"connection #{handle.serial} is not active")

        # paho takes its outgoing-message mutex inside publish() and holds it
        # while calling on_publish, so _cond must not be held across this call.
        info = handle._client.publish(topic, payload=payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            reason = mqtt.error_string(info.rc)
            handle._failure = handle._failure or f"publish failed: {reason}"
            logger.error("Publish to %s failed: %s", topic, reason)
            self._emit(EVENT_ERROR, handle, handle._failure)
            return info.mid

        with handle._cond:
            acked = info.mid in handle._early_acks
            handle._early_acks.discard(info.mid)
            if qos > 0 and not acked and not info.is_published():
                handle._pending.add(info.mid)
        return info.mid

    def close(self, handle: ConnectionHandle) -> None:
        """Gracefully end a session: stop accepting publishes, drain in-flight, disconnect."""
        if handle._closed:
            return

        handle._active = False

        # A drop while draining still counts as a failure; _teardown marks
        # the session as closing only once the drain is over.
        if handle._failure is None:
            with handle._cond:
                drained = handle._cond.wait_for(
                    lambda: not handle._pending or handle._failure is not None,
                    timeout=self.drain_timeout_s,
                )
            if not drained:
                logger.warning(
                    "Closing connection #%d with %d unacknowledged message(s)",
                    handle.serial,
                    handle.pending,
                )

        try:
            self._teardown(handle)
        finally:
            with self._lock:
                if self._active is handle:
                    self._active = None
        logger.info("Closed connection #%d", handle.serial)
        self._emit(EVENT_CLOSED, handle)

    def rotate(self, old: ConnectionHandle, credential: Credential) -> ConnectionHandle:
        """
        Replace `old` with a session authenticated by `credential`.
        `old` is fully closed before the new session is opened.
        """
        logger.info("Rotating credential: closing connection #%d", old.serial)
        self.close(old)
        try:
            return self.connect(credential)
        except BrokerConnectionError as exc:
            raise RotationError(f"Reconnect with rotated credential failed: {exc}") from exc
