"""
dorchestra - Durable unit orchestrator

Routes calls to stateful, single-flight execution units addressed by
deterministic identities, runs pipelines as units, and bridges task queues
to units with retry and dead-letter handling.
"""

__version__ = "0.1.0"


__all__ = [
    "UnitGateway",
    "UnitHandle",
    "UnitRegistry",
    "UnitIdentity",
    "derive_identity",
    "DorchestraConfig",
    "load_config",
    "get_dorchestra_home",
]

from .config import DorchestraConfig, load_config, get_dorchestra_home
from .gateway import UnitGateway, UnitHandle
from .registry import UnitIdentity, UnitRegistry, derive_identity
