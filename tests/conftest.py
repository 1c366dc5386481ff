"""
Pytest configuration and shared fixtures
"""
import itertools
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


class FakeReasonCode:
    """Stand-in for paho's ReasonCode: only name and is_failure are used."""

    def __init__(self, name, is_failure):
        self.name = name
        self.is_failure = is_failure

    def __str__(self):
        return self.name


CONNACK_OK = FakeReasonCode("Success", False)
NOT_AUTHORIZED = FakeReasonCode("Not authorized", True)
CONNECTION_LOST = FakeReasonCode("Unspecified error", True)


class FakeBroker:
    """
    Factory for fake paho clients. Every client built is recorded in `clients`
    and every connect/publish/disconnect is appended to `log` in call order.
    Connection attempts are numbered from 1.
    """

    def __init__(self):
        self.clients = []
        self.log = []
        self.refused = set()
        self.unreachable = set()
        self.silent = set()
        self.auto_ack = True
        # non-zero: every publish returns this rc and sends nothing
        self.publish_rc = 0
        # called as after_publish(fake, mid) once a message is sent
        self.after_publish = None

    def __call__(self, *args, **kwargs):
        n = len(self.clients) + 1
        fake = MagicMock()
        fake.attempt = n
        fake.ctor_args = args
        fake.ctor_kwargs = kwargs
        mids = itertools.count(1)

        def _connect(host, port, keepalive=60):
            if n in self.unreachable:
                raise OSError("Network is unreachable")
            self.log.append(("connect", n))

        def _loop_start():
            if n in self.silent:
                return
            rc = NOT_AUTHORIZED if n in self.refused else CONNACK_OK
            fake.on_connect(fake, None, {}, rc, None)

        def _publish(topic, payload=None, qos=0, retain=False):
            mid = next(mids)
            if self.publish_rc != 0:
                return SimpleNamespace(rc=self.publish_rc, mid=mid, is_published=lambda: False)
            self.log.append(("publish", n, topic, payload, qos))
            acked = self.auto_ack and qos > 0
            if acked:
                fake.on_publish(fake, None, mid, CONNACK_OK, None)
            if self.after_publish is not None:
                self.after_publish(fake, mid)
            return SimpleNamespace(rc=0, mid=mid, is_published=lambda: acked)

        def _disconnect(*a, **k):
            self.log.append(("disconnect", n))

        fake.connect.side_effect = _connect
        fake.loop_start.side_effect = _loop_start
        fake.publish.side_effect = _publish
        fake.disconnect.side_effect = _disconnect
        self.clients.append(fake)
        return fake

    def published(self):
        return [entry for entry in self.log if entry[0] == "publish"]


@pytest.fixture
def fake_broker(monkeypatch):
    """Patch paho.mqtt.client.Client with a FakeBroker factory."""
    broker = FakeBroker()
    monkeypatch.setattr("paho.mqtt.client.Client", broker)
    return broker


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every IOT_* variable so defaults and overrides are observable"""
    for key in list(os.environ):
        if key.startswith('IOT_'):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def rsa_key_file(tmp_path):
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    path = tmp_path / 'rsa_private.pem'
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return path, key.public_key()


@pytest.fixture
def ec_key_file(tmp_path):
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    key = ec.generate_private_key(ec.SECP256R1())
    path = tmp_path / 'ec_private.pem'
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return path, key.public_key()
