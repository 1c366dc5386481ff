"""
Credential-aware publish loop.

IDLE -> CONNECTING -> ACTIVE <-> ROTATING ... -> DRAINING -> TERMINATED
Any fatal error moves to FAILED after the connection is released.

One tick publishes exactly one message. Between ticks the scheduler waits the
publish interval, then rotates the credential if it is older than the
rotation threshold. Ticks never overlap: the next tick starts only after the
publish call returned and any rotation completed.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from telemetry_publisher.credentials import Credential, CredentialIssuer
from telemetry_publisher.mqtt_client import (
    BrokerConnectionError,
    ConnectionHandle,
    ConnectionManager,
)

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ROTATING = "rotating"
    DRAINING = "draining"
    TERMINATED = "terminated"
    FAILED = "failed"


_TERMINAL = (SchedulerState.TERMINATED, SchedulerState.FAILED)


@dataclass
class PublishJob:
    target_count: int
    interval_s: float
    rotation_threshold_s: float
    sequence_index: int = 1

    def __post_init__(self) -> None:
        if self.target_count < 1:
            raise ValueError("target_count must be >= 1")
        if self.interval_s < 0:
            raise ValueError("interval_s must be >= 0")

    @property
    def exhausted(self) -> bool:
        return self.sequence_index > self.target_count


@dataclass(frozen=True, slots=True)
class RunSummary:
    state: SchedulerState
    published: int
    rotations: int
    credentials_issued: int


class PublishScheduler:
    """
    Drives one publish-until-count-reached run.

    `compose` maps a sequence index to a payload. `clock` is compared against
    the credential's issued-at (epoch seconds). `cancel` is checked at the top
    of each tick and interrupts the inter-tick wait.
    """

    def __init__(
        self,
        issuer: CredentialIssuer,
        connections: ConnectionManager,
        compose: Callable[[int], str],
        *,
        identity: str,
        topic: str,
        job: PublishJob,
        validity_s: int,
        qos: int = 1,
        clock: Callable[[], float] = time.time,
        cancel: Optional[threading.Event] = None,
        wait: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.issuer = issuer
        self.connections = connections
        self.compose = compose
        self.identity = identity
        self.topic = topic
        self.job = job
        self.validity_s = validity_s
        self.qos = qos

        self._clock = clock
        self._cancel = cancel or threading.Event()
        self._wait = wait or self._cancel.wait

        self._state = SchedulerState.IDLE
        self._handle: Optional[ConnectionHandle] = None
        self._credential: Optional[Credential] = None
        self._published = 0
        self._rotations = 0
        self._issued = 0
        self.error: Optional[BaseException] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        return self._handle

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def summary(self) -> RunSummary:
        return RunSummary(
            state=self._state,
            published=self._published,
            rotations=self._rotations,
            credentials_issued=self._issued,
        )

    def _transition(self, new: SchedulerState) -> None:
        logger.debug("Scheduler %s -> %s", self._state.value, new.value)
        self._state = new

    def _check_handle(self) -> None:
        handle = self._handle
        if handle.failure is not None:
            raise BrokerConnectionError(
                f"connection #{handle.serial} failed: {handle.failure}"
            )

    def _issue(self) -> Credential:
        credential = self.issuer.issue(self.identity, self.validity_s)
        self._issued += 1
        return credential

    # -------------------------
    # States
    # -------------------------
    def _connect(self) -> None:
        self._transition(SchedulerState.CONNECTING)
        credential = self._issue()
        self._handle = self.connections.connect(credential)
        self._credential = credential
        self._transition(SchedulerState.ACTIVE)

    def _tick(self) -> None:
        if self._cancel.is_set():
            logger.info("Cancel requested; draining after %d message(s)", self._published)
            self._transition(SchedulerState.DRAINING)
            return

        self._check_handle()

        index = self.job.sequence_index
        payload = self.compose(index)
        logger.info("Publishing message %d/%d: %s", index, self.job.target_count, payload)
        self.connections.publish(self._handle, self.topic, payload, self.qos)
        self._check_handle()
        self._published += 1
        self.job.sequence_index = index + 1

        if self.job.exhausted:
            self._transition(SchedulerState.DRAINING)

    def _await_next_tick(self) -> None:
        self._wait(self.job.interval_s)
        if self._cancel.is_set():
            return

        elapsed = self._credential.age_s(self._clock())
        if elapsed > self.job.rotation_threshold_s:
            self._rotate(elapsed)

    def _rotate(self, elapsed: float) -> None:
        self._transition(SchedulerState.ROTATING)
        logger.info("Refreshing token after %d seconds", int(elapsed))
        credential = self._issue()
        self._handle = self.connections.rotate(self._handle, credential)
        self._credential = credential
        self._rotations += 1
        self._transition(SchedulerState.ACTIVE)

    def _drain(self) -> None:
        logger.info("Closing connection to MQTT after %d message(s)", self._published)
        if self._handle is not None:
            self._check_handle()
            self.connections.close(self._handle)
            self._check_handle()
        self._transition(SchedulerState.TERMINATED)

    def _fail(self, exc: BaseException) -> None:
        self.error = exc
        logger.error("Publish run halted in state %s: %s", self._state.value, exc)
        handle = self.connections.active_handle or self._handle
        if handle is not None and not handle.closed:
            try:
                self.connections.close(handle)
            except Exception:
                logger.exception("Error releasing connection #%d", handle.serial)
        self._transition(SchedulerState.FAILED)

    def run(self) -> RunSummary:
        """
        Run to completion. Returns a RunSummary in state TERMINATED, or
        re-raises the fatal error after moving to FAILED.
        """
        if self._state is not SchedulerState.IDLE:
            raise RuntimeError(f"scheduler already ran (state={self._state.value})")

        try:
            self._connect()
            while self._state is SchedulerState.ACTIVE:
                self._tick()
                if self._state is SchedulerState.ACTIVE:
                    self._await_next_tick()
            self._drain()
        except Exception as exc:
            self._fail(exc)
            raise

        return self.summary()
