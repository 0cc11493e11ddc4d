"""Tests for middleware composition and the hook-based middlewares."""

import logging

import pytest

from yarni import BaseMiddleware, LoggerMiddleware, MiddlewareError, Store, apply_middleware


def passthrough(state, action):
    return state


def recording(log, name):
    """A middleware factory that records its pre and post next() calls."""
    def factory(store):
        def middleware(next_dispatch):
            def dispatch(action):
                log.append(f"{name} pre")
                next_dispatch(action)
                log.append(f"{name} post")
            return dispatch
        return middleware
    return factory


class TestComposition:
    """Tests for the order and shape of the middleware chain."""

    def test_middleware_receives_action(self):
        received = []
        action = object()
        middleware = lambda store: lambda next_dispatch: received.append  # noqa: E731
        store = Store(passthrough, None, middleware)

        store.dispatch(action)

        assert received == [action]

    def test_first_middleware_is_outermost(self):
        log = []

        def reducer(state, action):
            log.append("reducer")
            return state

        store = Store(reducer, None, recording(log, "m1"), recording(log, "m2"))
        store.dispatch(None)

        assert log == ["m1 pre", "m2 pre", "reducer", "m2 post", "m1 post"]

    def test_middleware_calling_next_reaches_reducer(self):
        reduced = []
        store = Store(
            lambda state, action: reduced.append(action),
            None,
            lambda store: lambda next_dispatch: lambda action: next_dispatch(action),
        )

        store.dispatch("hello")

        assert reduced == ["hello"]

    def test_short_circuit_keeps_state(self):
        reduced = []

        def reducer(state, action):
            reduced.append(action)
            return state + 1

        swallow = lambda store: lambda next_dispatch: lambda action: None  # noqa: E731
        store = Store(reducer, 0, swallow)
        notified = []
        store.state_changed.subscribe(notified.append)

        store.dispatch("ignored")

        assert reduced == []
        assert store.state == 0
        assert notified == [0]

    def test_middleware_can_transform_action(self):
        def doubler(store):
            def middleware(next_dispatch):
                def dispatch(action):
                    next_dispatch(action * 2)
                return dispatch
            return middleware

        store = Store(lambda state, action: state + action, 0, doubler)
        store.dispatch(21)

        assert store.state == 42

    def test_middleware_can_replay_action(self):
        def twice(store):
            def middleware(next_dispatch):
                def dispatch(action):
                    next_dispatch(action)
                    next_dispatch(action)
                return dispatch
            return middleware

        store = Store(lambda state, action: state + action, 0, twice)
        store.dispatch(3)

        assert store.state == 6

    def test_middleware_reads_state_and_dispatches_reentrantly(self):
        log = []

        def expand(store):
            def middleware(next_dispatch):
                def dispatch(action):
                    if action == "double":
                        store.dispatch(store.state)
                        log.append(("after nested", store.state))
                        return
                    next_dispatch(action)
                return dispatch
            return middleware

        store = Store(lambda state, action: state + action, 5, expand)
        store.dispatch("double")

        assert store.state == 10
        assert log == [("after nested", 10)]

    def test_middleware_error_skips_inner_layers(self):
        reduced = []

        def failing(store):
            def middleware(next_dispatch):
                def dispatch(action):
                    raise KeyError("rejected")
                return dispatch
            return middleware

        store = Store(lambda state, action: reduced.append(action), None, failing)

        with pytest.raises(KeyError):
            store.dispatch("x")

        assert reduced == []

    def test_factory_receives_store(self):
        seen = []

        def factory(store):
            seen.append(store)
            return lambda next_dispatch: next_dispatch

        store = Store(passthrough, None, factory)

        assert seen == [store]

    def test_factory_must_return_callable(self):
        with pytest.raises(MiddlewareError) as info:
            Store(passthrough, None, lambda store: None)

        assert info.value.details["returned"] == "NoneType"

    def test_middleware_must_return_dispatcher(self):
        with pytest.raises(MiddlewareError, match="callable dispatcher"):
            Store(passthrough, None, lambda store: lambda next_dispatch: 42)

    def test_apply_middleware_is_deterministic(self):
        class FakeStore:
            state = None

            def dispatch(self, action):
                pass

        first, second = [], []
        terminal = lambda action: None  # noqa: E731

        apply_middleware(FakeStore(), terminal, [recording(first, "a"), recording(first, "b")])("x")
        apply_middleware(FakeStore(), terminal, [recording(second, "a"), recording(second, "b")])("x")

        assert first == second == ["a pre", "b pre", "b post", "a post"]

    def test_apply_middleware_without_middlewares_returns_terminal(self):
        terminal = lambda action: None  # noqa: E731

        assert apply_middleware(object(), terminal, []) is terminal


class TestBaseMiddleware:
    """Tests for the hook-based middleware."""

    class Hooks(BaseMiddleware):
        def __init__(self):
            self.calls = []

        def on_next(self, action, prev_state):
            self.calls.append(("next", action, prev_state))

        def on_complete(self, next_state, action):
            self.calls.append(("complete", action, next_state))

        def on_error(self, error, action):
            self.calls.append(("error", action, type(error).__name__))

    def test_hooks_around_reducer(self):
        hooks = self.Hooks()
        store = Store(lambda state, action: state + action, 1, hooks)

        store.dispatch(2)

        assert hooks.calls == [("next", 2, 1), ("complete", 2, 3)]

    def test_on_error_then_reraise(self):
        hooks = self.Hooks()

        def reducer(state, action):
            raise ValueError("nope")

        store = Store(reducer, 0, hooks)

        with pytest.raises(ValueError):
            store.dispatch("bad")

        assert hooks.calls == [("next", "bad", 0), ("error", "bad", "ValueError")]

    def test_class_is_instantiated(self):
        store = Store(passthrough, None, LoggerMiddleware)

        assert isinstance(store.middleware[0], LoggerMiddleware)

    def test_action_context_yields_context(self):
        hooks = self.Hooks()

        with hooks.action_context("act", "before") as context:
            context["next_state"] = "after"

        assert context["prev_state"] == "before"
        assert context["error"] is None
        assert hooks.calls == [("next", "act", "before"), ("complete", "act", "after")]


class TestLoggerMiddleware:
    """Tests for LoggerMiddleware."""

    def test_logs_before_and_after(self, caplog):
        store = Store(lambda state, action: state + 1, 0, LoggerMiddleware(level=logging.INFO))

        with caplog.at_level(logging.INFO, logger="yarni.middleware"):
            store.dispatch("increment")

        messages = [record.getMessage() for record in caplog.records]
        assert "dispatching 'increment'" in messages
        assert "state before 'increment': 0" in messages
        assert "state after 'increment': 1" in messages
        assert any(message.startswith("'increment' took ") for message in messages)

    def test_uses_action_type_attribute(self, caplog):
        class Action:
            type = "[Counter] Increment"

        store = Store(passthrough, None, LoggerMiddleware(logger_name="custom"))

        with caplog.at_level(logging.INFO, logger="custom"):
            store.dispatch(Action())

        assert "dispatching [Counter] Increment" in [r.getMessage() for r in caplog.records]

    def test_logs_errors(self, caplog):
        def reducer(state, action):
            raise RuntimeError("broken")

        store = Store(reducer, None, LoggerMiddleware())

        with caplog.at_level(logging.INFO, logger="yarni.middleware"):
            with pytest.raises(RuntimeError):
                store.dispatch("boom")

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert [r.getMessage() for r in errors] == ["error in 'boom': broken"]
