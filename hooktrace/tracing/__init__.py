from .backend import ObservationHandle, TracingBackend
from .processor import HookEventProcessor, ProcessRegistry

__all__ = ["HookEventProcessor", "ObservationHandle", "ProcessRegistry", "TracingBackend"]
