import pytest

from startserver.runtime.reload_contracts import (
    HMR_FAIL_EXIT_CODE,
    WatcherEvent,
    WatcherState,
    WorkerEvent,
    WorkerState,
    transition_watcher_state,
    transition_worker_state,
)


def test_hmr_fail_exit_code_contract():
    assert HMR_FAIL_EXIT_CODE == 222


def test_worker_happy_path_through_reload():
    state = WorkerState.ABSENT
    state = transition_worker_state(state, WorkerEvent.SPAWN)
    assert state == WorkerState.SPAWNING

    state = transition_worker_state(state, WorkerEvent.LOADED)
    assert state == WorkerState.LOADED

    state = transition_worker_state(state, WorkerEvent.RELOAD_REQUESTED)
    assert state == WorkerState.RELOAD_PENDING

    state = transition_worker_state(state, WorkerEvent.RELOAD_ACKNOWLEDGED)
    assert state == WorkerState.LOADED

    assert transition_worker_state(state, WorkerEvent.KILL) == WorkerState.ABSENT


def test_worker_reload_failure_crashes_handle():
    assert transition_worker_state(WorkerState.RELOAD_PENDING, WorkerEvent.RELOAD_FAILED) == WorkerState.CRASHED
    assert transition_worker_state(WorkerState.RELOAD_PENDING, WorkerEvent.EXIT) == WorkerState.CRASHED


def test_worker_early_exit_crashes_from_spawning():
    assert transition_worker_state(WorkerState.SPAWNING, WorkerEvent.EXIT) == WorkerState.CRASHED
    assert transition_worker_state(WorkerState.CRASHED, WorkerEvent.KILL) == WorkerState.ABSENT


@pytest.mark.parametrize(
    "state,event",
    [
        (WorkerState.ABSENT, WorkerEvent.LOADED),
        (WorkerState.ABSENT, WorkerEvent.KILL),
        (WorkerState.SPAWNING, WorkerEvent.RELOAD_REQUESTED),
        (WorkerState.LOADED, WorkerEvent.SPAWN),
        (WorkerState.CRASHED, WorkerEvent.LOADED),
        (WorkerState.RELOAD_PENDING, WorkerEvent.RELOAD_REQUESTED),
    ],
)
def test_worker_invalid_transitions_raise(state, event):
    with pytest.raises(ValueError):
        transition_worker_state(state, event)


def test_watcher_burst_cycle():
    state = transition_watcher_state(WatcherState.STOPPED, WatcherEvent.START)
    assert state == WatcherState.WATCHING

    state = transition_watcher_state(state, WatcherEvent.OUTPUT_CHANGED)
    state = transition_watcher_state(state, WatcherEvent.OUTPUT_CHANGED)
    assert state == WatcherState.BUILDING

    state = transition_watcher_state(state, WatcherEvent.OUTPUT_SETTLED)
    assert state == WatcherState.EMITTING

    state = transition_watcher_state(state, WatcherEvent.DELIVERED)
    assert state == WatcherState.WATCHING

    assert transition_watcher_state(state, WatcherEvent.STOP) == WatcherState.STOPPED


def test_watcher_invalid_transition_raises():
    with pytest.raises(ValueError):
        transition_watcher_state(WatcherState.WATCHING, WatcherEvent.OUTPUT_SETTLED)
