"""
power_flow.verification

Independent reference solutions used to cross-check the engine. pandapower is an
optional dependency; it is imported only when a reference is requested.
"""

from .reference import ReferenceDeviation, compare_with_reference, pandapower_reference

__all__ = ["ReferenceDeviation", "compare_with_reference", "pandapower_reference"]
