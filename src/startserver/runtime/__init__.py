"""Supervisor side of the reload protocol."""

from startserver.runtime.controller import LifecycleCoordinator, ReloadLifecycleEvent
from startserver.runtime.locator import build_script_reference, resolve_script
from startserver.runtime.reload_contracts import (
	HMR_FAIL_EXIT_CODE,
	LoadState,
	ReloadSessionState,
	WorkerEvent,
	WorkerState,
	transition_worker_state,
)
from startserver.runtime.supervisor import (
	EventKind,
	ProcessSupervisor,
	ReloadSession,
	SupervisorEvent,
	WorkerHandle,
)

__all__ = [
	"EventKind",
	"HMR_FAIL_EXIT_CODE",
	"LifecycleCoordinator",
	"LoadState",
	"ProcessSupervisor",
	"ReloadLifecycleEvent",
	"ReloadSession",
	"ReloadSessionState",
	"SupervisorEvent",
	"WorkerEvent",
	"WorkerHandle",
	"WorkerState",
	"build_script_reference",
	"resolve_script",
	"transition_worker_state",
]
