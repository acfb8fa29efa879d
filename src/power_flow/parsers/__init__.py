"""Input file parsers."""

from .matpower import load_case, parse_matpower_case, to_pandapower

__all__ = ["load_case", "parse_matpower_case", "to_pandapower"]
