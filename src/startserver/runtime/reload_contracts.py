from __future__ import annotations

from enum import Enum


HMR_FAIL_EXIT_CODE = 222
"""Exit status a worker uses when it quits because a live update could not apply."""


class WorkerState(str, Enum):
    """Lifecycle of one worker handle as seen by the supervisor."""

    ABSENT = "absent"
    SPAWNING = "spawning"
    LOADED = "loaded"
    RELOAD_PENDING = "reload_pending"
    CRASHED = "crashed"


class WorkerEvent(str, Enum):
    """Events that drive worker state transitions."""

    SPAWN = "spawn"
    LOADED = "loaded"
    RELOAD_REQUESTED = "reload_requested"
    RELOAD_ACKNOWLEDGED = "reload_acknowledged"
    RELOAD_FAILED = "reload_failed"
    EXIT = "exit"
    KILL = "kill"


class LoadState(str, Enum):
    """Tri-state 'reload acknowledged' flag carried by a worker handle."""

    UNKNOWN = "unknown"
    LOADED = "loaded"
    RELOAD_FAILED = "reload_failed"


class ReloadSessionState(str, Enum):
    REQUESTED = "requested"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class WatcherState(str, Enum):
    """States of the build output watcher that feeds pipeline hooks."""

    STOPPED = "stopped"
    WATCHING = "watching"
    BUILDING = "building"
    EMITTING = "emitting"


class WatcherEvent(str, Enum):
    START = "start"
    OUTPUT_CHANGED = "output_changed"
    OUTPUT_SETTLED = "output_settled"
    DELIVERED = "delivered"
    STOP = "stop"


def transition_worker_state(current: WorkerState, event: WorkerEvent) -> WorkerState:
    """Compute the next worker state for a given event.

    ``crashed`` is terminal for a handle: the supervisor either spawns a new handle
    or leaves the slot absent. Invalid transitions raise ValueError.
    """

    if event == WorkerEvent.KILL:
        if current == WorkerState.ABSENT:
            raise ValueError(f"Invalid worker transition: {current} -> {event}")
        return WorkerState.ABSENT

    if current == WorkerState.ABSENT:
        if event == WorkerEvent.SPAWN:
            return WorkerState.SPAWNING
        raise ValueError(f"Invalid worker transition: {current} -> {event}")

    if current == WorkerState.SPAWNING:
        if event == WorkerEvent.LOADED:
            return WorkerState.LOADED
        if event in {WorkerEvent.EXIT, WorkerEvent.RELOAD_FAILED}:
            return WorkerState.CRASHED
        raise ValueError(f"Invalid worker transition: {current} -> {event}")

    if current == WorkerState.LOADED:
        if event == WorkerEvent.LOADED:
            return WorkerState.LOADED
        if event == WorkerEvent.RELOAD_REQUESTED:
            return WorkerState.RELOAD_PENDING
        # Signal reloads are acknowledged on delivery, a late failure lands here.
        if event in {WorkerEvent.EXIT, WorkerEvent.RELOAD_FAILED}:
            return WorkerState.CRASHED
        if event == WorkerEvent.RELOAD_ACKNOWLEDGED:
            return WorkerState.LOADED
        raise ValueError(f"Invalid worker transition: {current} -> {event}")

    if current == WorkerState.RELOAD_PENDING:
        if event == WorkerEvent.RELOAD_ACKNOWLEDGED:
            return WorkerState.LOADED
        if event == WorkerEvent.LOADED:
            return WorkerState.RELOAD_PENDING
        if event in {WorkerEvent.RELOAD_FAILED, WorkerEvent.EXIT}:
            return WorkerState.CRASHED
        raise ValueError(f"Invalid worker transition: {current} -> {event}")

    if current == WorkerState.CRASHED:
        if event in {WorkerEvent.EXIT, WorkerEvent.RELOAD_FAILED}:
            return WorkerState.CRASHED
        raise ValueError(f"Invalid worker transition: {current} -> {event}")

    raise ValueError(f"Unknown worker state: {current}")


def transition_watcher_state(current: WatcherState, event: WatcherEvent) -> WatcherState:
    """Compute the next watcher state for a given event.

    Invalid transitions raise ValueError.
    """

    if event == WatcherEvent.STOP:
        return WatcherState.STOPPED

    if current == WatcherState.STOPPED:
        if event == WatcherEvent.START:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.WATCHING:
        if event == WatcherEvent.OUTPUT_CHANGED:
            return WatcherState.BUILDING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.BUILDING:
        if event == WatcherEvent.OUTPUT_CHANGED:
            return WatcherState.BUILDING
        if event == WatcherEvent.OUTPUT_SETTLED:
            return WatcherState.EMITTING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.EMITTING:
        if event == WatcherEvent.DELIVERED:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    raise ValueError(f"Unknown watcher state: {current}")
