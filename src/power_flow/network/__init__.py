"""Network model and state indexing."""

from .indexing import StateIndexer
from .model import (
    ACModel,
    BranchData,
    BusData,
    BusType,
    DCModel,
    GeneratorData,
    PowerSystem,
    SlackBusError,
)

__all__ = [
    "ACModel",
    "BranchData",
    "BusData",
    "BusType",
    "DCModel",
    "GeneratorData",
    "PowerSystem",
    "SlackBusError",
    "StateIndexer",
]
