"""Fakes for timers, transports and connectivity used across tests."""

import json

from globalleaderboards.events import EventEmitter


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback()


class FakeTimers:
    """Records scheduled callbacks; tests fire them explicitly."""

    def __init__(self):
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def pending_for(self, name):
        """Pending timers whose callback is the bound method ``name``."""
        return [t for t in self.pending if getattr(t.callback, "__name__", "") == name]

    def fire_pending(self, name):
        timers = self.pending_for(name)
        assert timers, f"no pending {name} timer"
        timers[0].fire()


class FakeSocketTransport:
    def __init__(self, url, listener):
        self.url = url
        self.listener = listener
        self.started = False
        self.closed = None
        self.sent = []
        self.fail_send = False

    def start(self):
        self.started = True

    def send(self, text):
        if self.fail_send:
            raise ConnectionError("socket gone")
        self.sent.append(json.loads(text))

    def close(self, code=1000, reason=""):
        self.closed = (code, reason)

    # Test helpers

    def open(self):
        self.listener.on_open()

    def receive(self, message):
        self.listener.on_message(message if isinstance(message, str) else json.dumps(message))

    def drop(self, code=1006, reason=""):
        self.listener.on_close(code, reason)

    def sent_types(self):
        return [m["type"] for m in self.sent]


class FakeSocketFactory:
    def __init__(self):
        self.transports = []

    def __call__(self, url, listener):
        transport = FakeSocketTransport(url, listener)
        self.transports.append(transport)
        return transport

    @property
    def last(self):
        return self.transports[-1]


class FakeStreamTransport:
    def __init__(self, url, listener):
        self.url = url
        self.listener = listener
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def close(self):
        self.closed = True

    def open(self):
        self.listener.on_open()

    def event(self, name, data):
        self.listener.on_event(name, data if isinstance(data, str) else json.dumps(data))

    def drop(self):
        self.listener.on_close()


class FakeStreamFactory(FakeSocketFactory):
    def __call__(self, url, listener):
        transport = FakeStreamTransport(url, listener)
        self.transports.append(transport)
        return transport


class FakeConnectivity:
    def __init__(self, online=True):
        self.online = online
        self._events = EventEmitter()

    def is_online(self):
        return self.online

    def on(self, event, handler):
        self._events.on(event, handler)

    def off(self, event, handler):
        self._events.off(event, handler)

    def set_online(self, online):
        self.online = online
        self._events.emit("online" if online else "offline")
