"""Keep one worker process in sync with the latest build output."""

from startserver.monitor.agent import notify_loaded
from startserver.runtime.controller import LifecycleCoordinator, ReloadLifecycleEvent
from startserver.runtime.supervisor import ProcessSupervisor

__all__ = [
	"LifecycleCoordinator",
	"ProcessSupervisor",
	"ReloadLifecycleEvent",
	"notify_loaded",
]
