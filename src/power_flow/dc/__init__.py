"""DC (linearised, lossless) power flow."""

from .dc_power_flow import DCBusPower, DCPowerFlow

__all__ = ["DCBusPower", "DCPowerFlow"]
