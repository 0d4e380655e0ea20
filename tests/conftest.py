from __future__ import annotations

from dataclasses import replace

import pytest

from nmdcc.config import ClientConfig
from nmdcc.errors import TransportError
from nmdcc.events import HubEvent
from nmdcc.session import HubSession


class FakeTransport:
    """In-memory stand-in for StreamTransport; tests drive the callbacks."""

    def __init__(self, host, port, *, on_data, on_close, on_open=None, **kwargs):
        self.host = host
        self.port = port
        self.on_data = on_data
        self.on_close = on_close
        self.on_open = on_open
        self.kwargs = kwargs
        self.written: list[bytes] = []
        self.started = False
        self.destroyed = False
        self.fail_writes = False
        self.local_address = ("10.0.0.5", 50000)

    def start(self) -> None:
        self.started = True

    def write(self, data: bytes) -> None:
        if self.destroyed or self.fail_writes:
            raise TransportError("fake transport closed")
        self.written.append(bytes(data))

    def destroy(self) -> None:
        self.destroyed = True

    def receive(self, text: str, encoding: str = "utf-8") -> None:
        self.on_data(text.encode(encoding))

    def lines(self) -> list[str]:
        return [chunk.decode("latin-1") for chunk in self.written]


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []

    def __call__(self, host, port, **kwargs) -> FakeTransport:
        transport = FakeTransport(host, port, **kwargs)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class EventRecorder:
    def __init__(self, events) -> None:
        self.seen: list[tuple[HubEvent, tuple]] = []
        for event in HubEvent:
            events.subscribe(event, lambda *args, ev=event: self.seen.append((ev, args)))

    def of(self, event: HubEvent) -> list[tuple]:
        return [args for ev, args in self.seen if ev is event]

    def names(self) -> list[HubEvent]:
        return [ev for ev, _ in self.seen if ev is not HubEvent.DEBUG]

    def clear(self) -> None:
        self.seen.clear()


@pytest.fixture
def make_hub():
    """Build a HubSession over fake transports: ``hub, factory, events = make_hub(...)``."""
    sessions: list[HubSession] = []

    def _make(**overrides):
        cfg = replace(
            ClientConfig(nick="alice", connect_immediately=False), **overrides
        )
        factory = FakeTransportFactory()
        hub = HubSession(cfg, transport_factory=factory)
        recorder = EventRecorder(hub.events)
        sessions.append(hub)
        return hub, factory, recorder

    yield _make

    for hub in sessions:
        hub.set_auto_reconnect(False)
