from .phase_10_prepare import PreparePhase
from .phase_20_storage import StoragePhase
from .phase_30_populate import PopulatePhase
from .phase_35_import import ImportPoolPhase
from .phase_40_bootloader import BootloaderPhase
from .phase_50_finalize import FinalizePhase

__all__ = [
    "PreparePhase",
    "StoragePhase",
    "PopulatePhase",
    "ImportPoolPhase",
    "BootloaderPhase",
    "FinalizePhase",
]
