from .lifecycle import VMLifecycle, VMSession, VMState, vm_name
from .tart import TartCli, TartInstance, ensure_golden_image

__all__ = ["VMLifecycle", "VMSession", "VMState", "vm_name", "TartCli", "TartInstance", "ensure_golden_image"]
