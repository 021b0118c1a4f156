"""Tests for the reducer-style execution state store."""

import asyncio

import pytest
from pydantic import ValidationError

from stepviz import store
from stepviz.errors import RunInProgressError, RuntimeNotReadyError
from stepviz.models import Frame, PrimitiveValue, Snapshot


def _steps(count, output="done\n"):
    return [
        Snapshot(frame=Frame(variables={"i": PrimitiveValue(value=str(i))}), current_line=i + 1, output=output)
        for i in range(count)
    ]


@pytest.fixture
def loaded():
    state = store.mark_initialized(store.initial_state())
    return store.set_steps(store.begin_run(state), _steps(3))


class TestLifecycle:
    def test_initial_state(self):
        state = store.initial_state()
        assert state.total == 0
        assert not state.is_initialized
        assert store.current_snapshot(state) is None

    def test_run_requires_initialization(self):
        state = store.mark_failed(store.initial_state(), "modules unavailable")
        with pytest.raises(RuntimeNotReadyError) as info:
            store.begin_run(state)
        assert "modules unavailable" in str(info.value)

    def test_concurrent_run_is_rejected(self):
        state = store.begin_run(store.mark_initialized(store.initial_state()))
        assert state.is_running
        with pytest.raises(RunInProgressError):
            store.begin_run(state)

    def test_set_steps_finishes_run(self, loaded):
        assert loaded.total == 3
        assert loaded.current_index == 0
        assert not loaded.is_running

    def test_fail_run(self):
        state = store.begin_run(store.mark_initialized(store.initial_state()))
        state = store.fail_run(state, "boom")
        assert state.error == "boom"
        assert not state.is_running
        assert state.total == 0

    def test_reset_keeps_initialization(self, loaded):
        state = store.reset(loaded)
        assert state.total == 0
        assert state.is_initialized

    def test_state_is_immutable(self, loaded):
        with pytest.raises(ValidationError):
            loaded.current_index = 2


class TestNavigation:
    def test_goto(self, loaded):
        assert store.goto_index(loaded, 2).current_index == 2

    @pytest.mark.parametrize("index", [-1, 3, 100])
    def test_goto_out_of_range_is_a_no_op(self, loaded, index):
        assert store.goto_index(loaded, index) is loaded

    def test_reducers_do_not_mutate(self, loaded):
        store.step_forward(loaded)
        assert loaded.current_index == 0

    def test_forward_and_back(self, loaded):
        state = store.step_forward(store.step_forward(loaded))
        assert state.current_index == 2
        assert store.step_forward(state).current_index == 2
        assert store.step_back(state).current_index == 1
        assert store.step_back(loaded).current_index == 0

    def test_first_and_last(self, loaded):
        last = store.last_step(loaded)
        assert last.current_index == 2
        assert store.first_step(last).current_index == 0

    def test_current_snapshot_shows_final_output(self):
        steps = _steps(3, output="partial")
        steps[-1] = steps[-1].model_copy(update={"output": "final\n"})
        state = store.set_steps(store.begin_run(store.mark_initialized(store.initial_state())), steps)
        snapshot = store.current_snapshot(store.goto_index(state, 1))
        assert snapshot.output == "final\n"
        assert snapshot.current_line == 2
        assert snapshot.frame.variables["i"].value == "1"


class TestAutoplay:
    def _play(self, state, speed=1.0):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        async def collect():
            return [s.current_index async for s in store.autoplay(state, speed, sleep=fake_sleep)]

        return asyncio.run(collect()), delays

    def test_advances_to_last_step(self, loaded):
        indexes, delays = self._play(loaded, speed=2.0)
        assert indexes == [1, 2]
        assert delays == [0.5, 0.5]

    def test_stops_at_last_step(self, loaded):
        indexes, _ = self._play(store.last_step(loaded))
        assert indexes == []

    def test_rejects_non_positive_speed(self, loaded):
        with pytest.raises(ValueError):
            self._play(loaded, speed=0)
