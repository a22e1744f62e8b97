from startserver.monitor.agent import ReloadMonitor, active_monitor, notify_loaded
from startserver.monitor.hot import HotModuleRuntime, HotStatus, detect_hot_runtime
