"""Tests for Digger: options, single ticks, and the polling thread."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tests._support import SORTED_SET_KEY, wait_until
from timecapsule.capsule import Capsule, unix_millis
from timecapsule.digger import (
    DEFAULT_RETRY_INTERVAL,
    DEFAULT_RETRY_LIMIT,
    Digger,
    DiggerOptions,
    default_digger_options,
    merge_digger_options,
)
from timecapsule.errors import (
    CapsuleDecodeError,
    DestroyExhaustedError,
    DiggerError,
    StoreTransportError,
)
from timecapsule.logging import CapsuleLogger
from timecapsule.stores import RedisCommandStore, RedisStore


def _events(mock_method) -> list[str]:
    return [c.args[0] for c in mock_method.call_args_list]


@pytest.fixture
def logger():
    return MagicMock(spec=["debug", "info", "warning", "error"])


@pytest.fixture
def mock_store():
    store = MagicMock()
    store.type = "mock"
    store.dig.return_value = None
    return store


class TestDiggerOptions:
    def test_defaults(self):
        options = default_digger_options()
        assert options.retry_limit == DEFAULT_RETRY_LIMIT == 100
        assert options.retry_interval == DEFAULT_RETRY_INTERVAL == 0.5
        assert isinstance(options.logger, CapsuleLogger)

    def test_merge_overrides_positive_values(self, logger):
        merged = merge_digger_options(
            default_digger_options(),
            DiggerOptions(retry_limit=3, retry_interval=0.2, logger=logger),
        )
        assert merged.retry_limit == 3
        assert merged.retry_interval == 0.2
        assert merged.logger is logger

    def test_merge_ignores_zero_negative_and_none(self):
        original = default_digger_options()
        merged = merge_digger_options(
            original,
            DiggerOptions(retry_limit=0, retry_interval=-1, logger=None),
            None,
        )
        assert merged.retry_limit == original.retry_limit
        assert merged.retry_interval == original.retry_interval
        assert merged.logger is original.logger

    def test_merge_does_not_mutate_original(self):
        original = default_digger_options()
        merge_digger_options(original, DiggerOptions(retry_limit=7))
        assert original.retry_limit == 100

    def test_stdlib_logger_is_adapted(self):
        stdlib_logger = logging.getLogger("timecapsule.test.digger")
        merged = merge_digger_options(default_digger_options(), DiggerOptions(logger=stdlib_logger))

        assert merged.logger is not stdlib_logger
        merged.logger.error("capsule_dig_failed", store="mock", error="refused")

    def test_later_options_win(self):
        merged = merge_digger_options(
            default_digger_options(),
            DiggerOptions(retry_limit=2),
            DiggerOptions(retry_limit=9),
        )
        assert merged.retry_limit == 9


class TestDiggerConstruction:
    def test_rejects_non_positive_interval(self, mock_store):
        with pytest.raises(DiggerError):
            Digger(mock_store, 0)
        with pytest.raises(DiggerError):
            Digger(mock_store, timedelta(seconds=-1))

    def test_accepts_timedelta(self, mock_store):
        assert Digger(mock_store, timedelta(milliseconds=250)).interval == 0.25

    def test_options_merged_with_defaults(self, mock_store, logger):
        digger = Digger(mock_store, 1, DiggerOptions(retry_limit=0, logger=logger))
        assert digger.options.retry_limit == 100
        assert digger.logger is logger

    def test_handler_can_only_be_set_once(self, mock_store):
        digger = Digger(mock_store, 1)
        digger.set_handler(lambda d, c: None)
        with pytest.raises(DiggerError, match="already set"):
            digger.set_handler(lambda d, c: None)

    def test_bury_passes_through(self, mock_store):
        digger = Digger(mock_store, 1)
        digger.bury_for("x", 5)
        digger.bury_until("y", 1000)
        mock_store.bury_for.assert_called_once_with("x", 5)
        mock_store.bury_until.assert_called_once_with("y", 1000)

    def test_repr(self, mock_store):
        assert repr(Digger(mock_store, 2)) == "Digger(store='mock', interval=2.0s)"


class TestRunOnce:
    """One tick: dig, hand over, destroy."""

    def test_nothing_due(self, mock_store, logger):
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))
        assert digger.run_once() is None
        mock_store.destroy.assert_not_called()
        assert digger.stats.ticks == 1
        assert digger.stats.last_tick is not None

    def test_handler_then_destroy(self, mock_store, logger):
        capsule = Capsule("x", buried_at=1, dug_out_at=2)
        mock_store.dig.return_value = capsule
        order = []
        mock_store.destroy.side_effect = lambda c: order.append("destroy")

        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))
        digger.set_handler(lambda d, c: order.append(("handler", d, c)))

        assert digger.run_once() is capsule
        assert order == [("handler", digger, capsule), "destroy"]
        stats = digger.stats
        assert (stats.dug, stats.handled, stats.destroyed) == (1, 1, 1)

    def test_no_handler_still_destroys(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))
        digger.run_once()
        mock_store.destroy.assert_called_once()
        assert digger.stats.handled == 0

    def test_dig_error_is_logged(self, mock_store, logger):
        mock_store.dig.side_effect = StoreTransportError("down").with_context(
            store="mock", operation="dig"
        )
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))

        assert digger.run_once() is None

        assert digger.stats.dig_errors == 1
        assert _events(logger.error) == ["capsule_dig_failed"]
        fields = logger.error.call_args.kwargs
        assert fields["error_type"] == "StoreTransportError"
        assert fields["retryable"] is True
        assert fields["operation"] == "dig"

    def test_poison_pill_is_logged(self, mock_store, logger):
        mock_store.dig.side_effect = CapsuleDecodeError("capsule is not valid base64")
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))

        assert digger.run_once() is None
        assert logger.error.call_args.kwargs["error_type"] == "CapsuleDecodeError"

    def test_dig_timeout(self, mock_store, logger):
        mock_store.dig.side_effect = lambda: time.sleep(0.5)
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger), operation_timeout=0.05)

        assert digger.run_once() is None
        assert logger.error.call_args.kwargs["error_type"] == "OperationTimeoutError"

    def test_handler_error_skips_destroy(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))

        def handler(d, c):
            raise RuntimeError("smtp down")

        digger.set_handler(handler)
        digger.run_once()

        mock_store.destroy.assert_not_called()
        assert digger.stats.handler_errors == 1
        assert _events(logger.error) == ["capsule_handler_failed"]

    def test_destroy_retried_on_retryable_error(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        mock_store.destroy.side_effect = [StoreTransportError("blip"), None]
        digger = Digger(mock_store, 1, DiggerOptions(retry_interval=0.001, logger=logger))

        digger.run_once()

        assert mock_store.destroy.call_count == 2
        assert _events(logger.warning) == ["capsule_destroy_retry"]
        assert digger.stats.destroyed == 1

    def test_destroy_gives_up_after_retry_limit(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        mock_store.destroy.side_effect = StoreTransportError("down")
        digger = Digger(
            mock_store, 1, DiggerOptions(retry_limit=3, retry_interval=0.001, logger=logger)
        )

        digger.run_once()

        assert mock_store.destroy.call_count == 3
        assert digger.stats.destroy_errors == 1
        assert _events(logger.error) == ["capsule_destroy_failed"]
        assert logger.error.call_args.kwargs["destroy_attempts"] == 3

    def test_destroy_not_retried_on_permanent_error(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        mock_store.destroy.side_effect = ValueError("bad member")
        digger = Digger(mock_store, 1, DiggerOptions(retry_interval=0.001, logger=logger))

        digger.run_once()

        assert mock_store.destroy.call_count == 1
        assert digger.stats.destroy_errors == 1

    def test_exhausted_destroy_not_retried(self, mock_store, logger):
        """The store has already spent its own retries."""
        mock_store.dig.return_value = Capsule("x")
        mock_store.destroy.side_effect = DestroyExhaustedError("gave up")
        digger = Digger(mock_store, 1, DiggerOptions(retry_interval=0.001, logger=logger))

        digger.run_once()

        assert mock_store.destroy.call_count == 1
        assert _events(logger.error) == ["capsule_destroy_failed"]
        assert logger.error.call_args.kwargs["destroy_attempts"] == 1

    def test_destroy_timeout_not_retried(self, mock_store, logger):
        mock_store.dig.return_value = Capsule("x")
        mock_store.destroy.side_effect = lambda capsule: time.sleep(0.3)
        digger = Digger(
            mock_store,
            1,
            DiggerOptions(retry_interval=0.001, logger=logger),
            operation_timeout=0.05,
        )

        digger.run_once()

        assert mock_store.destroy.call_count == 1
        assert logger.error.call_args.kwargs["error_type"] == "OperationTimeoutError"
        assert digger.stats.destroy_errors == 1

    def test_failing_zrem_bounded_by_store_retry_limit(self, fake_redis, logger):
        store = RedisStore(SORTED_SET_KEY, fake_redis, retry_limit=5, retry_interval=0)
        store.bury_until("x", unix_millis() - 1)
        fake_redis.fail("zrem", RedisConnectionError("down"), times=None)
        digger = Digger(store, 1, DiggerOptions(retry_limit=10, retry_interval=0.001, logger=logger))

        digger.run_once()

        assert [name for name, _ in fake_redis.calls].count("zrem") == 5
        assert digger.stats.destroy_errors == 1


class TestDiggerLifecycle:
    """The polling thread."""

    def test_start_and_stop(self, mock_store, logger):
        digger = Digger(mock_store, 0.02, DiggerOptions(logger=logger))
        digger.start()
        assert digger.is_running

        assert wait_until(lambda: digger.stats.ticks >= 2)

        digger.stop()
        assert not digger.is_running
        assert "digger_started" in _events(logger.info)

    def test_double_start_ignored(self, mock_store, logger):
        digger = Digger(mock_store, 1, DiggerOptions(logger=logger))
        digger.start()
        digger.start()
        try:
            assert digger.is_running
            assert _events(logger.warning) == ["digger_already_started"]
        finally:
            digger.stop()

    def test_stop_is_idempotent(self, mock_store):
        digger = Digger(mock_store, 0.02)
        digger.stop()
        digger.start()
        digger.stop()
        digger.stop()
        assert not digger.is_running

    def test_stop_interrupts_wait(self, mock_store):
        """A long interval does not delay stop()."""
        digger = Digger(mock_store, 30)
        digger.start()

        started = time.monotonic()
        digger.stop()
        assert time.monotonic() - started < 2
        assert digger.stats.ticks == 0

    def test_no_handler_calls_after_stop(self, fake_redis):
        store = RedisStore(SORTED_SET_KEY, fake_redis)
        calls = []
        digger = Digger(store, 0.02)
        digger.set_handler(lambda d, c: calls.append(c))

        digger.start()
        digger.stop()
        store.bury_until("late", unix_millis() - 1)
        time.sleep(0.1)

        assert calls == []
        assert store.size() == 1

    def test_restart_after_stop(self, fake_redis):
        store = RedisStore(SORTED_SET_KEY, fake_redis)
        got = threading.Event()
        digger = Digger(store, 0.02)
        digger.set_handler(lambda d, c: got.set())

        digger.start()
        digger.stop()
        digger.start()
        try:
            store.bury_until("again", unix_millis() - 1)
            assert got.wait(2)
        finally:
            digger.stop()

    def test_tick_errors_do_not_stop_loop(self, mock_store, logger):
        mock_store.dig.side_effect = StoreTransportError("down")
        digger = Digger(mock_store, 0.02, DiggerOptions(logger=logger))
        digger.start()
        try:
            assert wait_until(lambda: digger.stats.dig_errors >= 3)
            assert digger.is_running
        finally:
            digger.stop()

    def test_stdlib_logger_keeps_loop_alive(self, fake_redis, caplog):
        store = RedisStore(SORTED_SET_KEY, fake_redis)
        fake_redis.fail("zrangebyscore", RedisConnectionError("down"), times=None)
        stdlib_logger = logging.getLogger("timecapsule.test.digger")
        digger = Digger(store, 0.01, DiggerOptions(logger=stdlib_logger))

        with caplog.at_level(logging.ERROR, logger="timecapsule.test.digger"):
            digger.start()
            try:
                assert wait_until(lambda: digger.stats.dig_errors >= 3)
                assert digger.is_running
            finally:
                digger.stop()

        messages = [record.getMessage() for record in caplog.records]
        assert any("capsule_dig_failed" in m and "StoreTransportError" in m for m in messages)

    def test_broken_logger_does_not_kill_loop(self, mock_store, caplog):
        mock_store.dig.side_effect = StoreTransportError("down")
        broken = MagicMock(spec=["debug", "info", "warning", "error"])
        broken.error.side_effect = TypeError("unexpected keyword argument")
        digger = Digger(mock_store, 0.01, DiggerOptions(logger=broken))

        with caplog.at_level(logging.ERROR, logger="timecapsule.digger"):
            digger.start()
            try:
                assert wait_until(lambda: mock_store.dig.call_count >= 3)
                assert digger.is_running
            finally:
                digger.stop()

        assert any("digger_tick_failed" in r.getMessage() for r in caplog.records)

    def test_dig_outliving_stop_is_reburied(self, fake_redis):
        """A dig still running when stop() gives up never reaches the handler."""
        store = RedisStore(SORTED_SET_KEY, fake_redis)
        store.bury_until("late", unix_millis() - 1)
        entered = threading.Event()
        release = threading.Event()
        real_dig = store.dig

        def slow_dig():
            entered.set()
            release.wait(5)
            return real_dig()

        store.dig = slow_dig
        calls = []
        digger = Digger(store, 0.01, stop_timeout=0.05)
        digger.set_handler(lambda d, c: calls.append(c))

        digger.start()
        assert entered.wait(2)
        digger.stop()
        release.set()
        digger._thread.join(2)

        assert store.size() == 1
        assert calls == []
        assert digger.stats.dug == 0
        assert store.dig().payload == "late"

    def test_health(self, mock_store):
        digger = Digger(mock_store, 0.5)
        health = digger.health()
        assert health["healthy"] is False
        assert health["backend"] == "mock"
        assert health["interval_seconds"] == 0.5
        assert health["ticks"] == 0
        assert health["last_tick"] is None
        assert health["started_at"] is None

        digger.start()
        try:
            assert digger.health()["healthy"] is True
        finally:
            digger.stop()


class TestDiggerScenarios:
    """End to end against the in-memory sorted set."""

    @pytest.mark.slow
    @pytest.mark.parametrize("store_cls", [RedisStore, RedisCommandStore])
    def test_hello(self, fake_redis, store_cls):
        """Bury "hello" for 1s; a 250ms digger delivers it once within ~2s."""
        store = store_cls(SORTED_SET_KEY, fake_redis)
        received = []
        delivered = threading.Event()

        def handler(digger, capsule):
            received.append(capsule.payload)
            delivered.set()

        digger = Digger(store, timedelta(milliseconds=250))
        digger.set_handler(handler)
        digger.start()
        try:
            digger.bury_for("hello", timedelta(seconds=1))
            assert delivered.wait(2.5)
            assert wait_until(lambda: store.size() == 0, timeout=1)
            time.sleep(0.3)
        finally:
            digger.stop()

        assert received == ["hello"]
        assert digger.stats.destroyed == 1

    def test_many_diggers_deliver_each_capsule_once(self, fake_redis):
        payload_count = 60
        received: list[int] = []
        lock = threading.Lock()

        def handler(digger, capsule):
            with lock:
                received.append(capsule.payload)

        diggers = []
        for _ in range(10):
            digger = Digger(RedisStore(SORTED_SET_KEY, fake_redis), 0.005)
            digger.set_handler(handler)
            diggers.append(digger)

        due_at = unix_millis() - 1
        for i in range(payload_count):
            diggers[0].bury_until(i, due_at - i)

        for digger in diggers:
            digger.start()
        try:
            assert wait_until(lambda: len(received) >= payload_count, timeout=10)
            time.sleep(0.1)
        finally:
            for digger in diggers:
                digger.stop()

        assert sorted(received) == list(range(payload_count))
        assert fake_redis.entries(SORTED_SET_KEY) == []
