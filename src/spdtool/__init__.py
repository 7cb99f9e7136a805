"""spdtool - host driver for the RP2040 SPD/PMIC programmer."""

__version__ = "0.1.0"
