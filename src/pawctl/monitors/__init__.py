from pawctl.monitors.pr import PRMonitor
from pawctl.monitors.wait import WaitMonitor

__all__ = ["PRMonitor", "WaitMonitor"]
