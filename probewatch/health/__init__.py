"""Health subsystem — probe executor, status store, scheduler."""

from .executor import ProbeExecutor
from .models import CheckResult, CheckStatus
from .registry import MonitorConfig, ServiceDefinition
from .scheduler import HealthScheduler
from .store import StatusStore
