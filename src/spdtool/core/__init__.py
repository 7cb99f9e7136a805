"""Whole-image SPD and PMIC operations and bus monitoring."""

from spdtool.core.bus_monitor import BusMonitor

from spdtool.core.paging import (
    ChunkOutcome,
    Ddr3Strategy,
    Ddr4Strategy,
    Ddr5Strategy,
    PagingConfig,
    PagingStrategy,
    strategy_for,
)
from spdtool.core.pmic_manager import PmicManager
from spdtool.core.spd_manager import SpdManager

__all__ = [
    "BusMonitor",
    "ChunkOutcome",
    "Ddr3Strategy",
    "Ddr4Strategy",
    "Ddr5Strategy",
    "PagingConfig",
    "PagingStrategy",
    "PmicManager",
    "SpdManager",
    "strategy_for",
]
