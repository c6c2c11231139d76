"""Tests for connectivity monitoring and its helpers."""

import threading
from unittest.mock import Mock

from globalleaderboards.connectivity import OFFLINE, ONLINE, NetworkMonitor
from globalleaderboards.events import EventEmitter
from globalleaderboards.timers import ThreadingTimers, TimerHandle


class TestNetworkMonitor:
    def setup_method(self):
        self.reachable = True
        self.monitor = NetworkMonitor("https://api.example.com:8443", probe=lambda: self.reachable)

    def test_host_and_port_from_url(self):
        assert (self.monitor.host, self.monitor.port) == ("api.example.com", 8443)
        assert NetworkMonitor("http://localhost").port == 80
        assert NetworkMonitor("https://api.example.com").port == 443

    def test_starts_online(self):
        assert self.monitor.is_online()

    def test_emits_on_change_only(self):
        online, offline = Mock(), Mock()
        self.monitor.on(ONLINE, online)
        self.monitor.on(OFFLINE, offline)

        self.monitor.check()
        self.reachable = False
        self.monitor.check()
        self.monitor.check()
        self.reachable = True
        self.monitor.check()

        assert offline.call_count == 1
        assert online.call_count == 1
        assert self.monitor.is_online()

    def test_off(self):
        offline = Mock()
        self.monitor.on(OFFLINE, offline)
        self.monitor.off(OFFLINE, offline)
        self.reachable = False

        assert self.monitor.check() is False
        offline.assert_not_called()

    def test_start_and_stop(self):
        self.monitor.interval = 0.01
        self.monitor.start()
        self.monitor.stop()

        assert self.monitor._stop.is_set()


class TestEventEmitter:
    def test_handlers_run_in_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("x", lambda v: calls.append(("a", v)))
        emitter.on("x", lambda v: calls.append(("b", v)))

        emitter.emit("x", 1)

        assert calls == [("a", 1), ("b", 1)]

    def test_failing_handler_does_not_stop_others(self):
        emitter = EventEmitter()
        after = Mock()
        emitter.on("x", Mock(side_effect=RuntimeError("boom")))
        emitter.on("x", after)

        emitter.emit("x")

        after.assert_called_once_with()

    def test_duplicate_registration_is_ignored(self):
        emitter = EventEmitter()
        handler = Mock()
        emitter.on("x", handler)
        emitter.on("x", handler)

        emitter.emit("x")

        assert handler.call_count == 1
        assert emitter.listener_count("x") == 1


class TestThreadingTimers:
    def test_fires_once(self):
        fired = threading.Event()

        ThreadingTimers().call_later(0.01, fired.set)

        assert fired.wait(2)

    def test_cancel(self):
        called = Mock()

        timer = ThreadingTimers().call_later(0.5, called)
        timer.cancel()
        timer.join(2)

        called.assert_not_called()
        assert isinstance(timer, TimerHandle)
