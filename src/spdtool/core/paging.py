"""Per-generation paging plans and the chunk retry policy.

A :class:`PagingStrategy` turns a detected module into an ordered list of
:class:`PageSpan` windows and the chunks inside each one. It performs no
I/O; :class:`~spdtool.core.spd_manager.SpdManager` executes the plan.

Layouts:
    DDR3/other  one window, offsets 0..size
    DDR4        two fixed 256-byte pages; the offset's high bit selects
                the page, writes settle when entering page 1
    DDR5        128-byte pages selected through hub register MR11
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import StrEnum

from spdtool.device.models import ModuleInfo, ModuleType
from spdtool.exceptions import ErrorKind, ExhaustedRetriesError, InvalidArgumentError, SpdToolError
from spdtool.protocol.types import MAX_READ_LENGTH, MAX_WRITE_LENGTH
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)

DDR4_PAGE_SIZE = 256


@dataclass(frozen=True)
class PagingConfig:
    """Chunk sizes, retry counts and delays for whole-image operations.

    The counts and delays were tuned against real hardware and may need
    adjusting for other programmers or modules.
    """

    read_chunk: int = MAX_READ_LENGTH
    write_chunk: int = MAX_WRITE_LENGTH
    ddr5_page_size: int = 128
    ddr5_read_chunk: int = 32
    read_retries: int = 3
    ddr5_retries: int = 5
    write_retries: int = 3
    # Multiplied by the attempt number: 50 ms, 100 ms, ...
    failure_backoff_s: float = 0.05
    error_backoff_s: float = 0.1
    ddr5_page_settle_s: float = 0.01
    ddr4_boundary_settle_s: float = 0.02
    inter_write_delay_s: float = 0.02
    max_write_errors: int = 3
    pmic_chunk: int = 16
    pmic_chunk_delay_s: float = 0.01


class RswpPolicy(StrEnum):
    """What to do with reversible write protection before a whole-image write."""

    NONE = "none"
    TOLERATE = "tolerate"  # clear, ignore failure
    REQUIRE = "require"  # clear, abort on failure


@dataclass(frozen=True)
class Chunk:
    offset: int
    length: int


@dataclass(frozen=True)
class PageSpan:
    """A contiguous window of the image.

    ``select`` is the value to write to the page register before touching
    the window, or None when the window needs no explicit selection.
    """

    index: int
    start: int
    end: int
    select: int | None = None

    @property
    def length(self) -> int:
        return self.end - self.start

    def chunks(self, size: int) -> Iterator[Chunk]:
        for offset in range(self.start, self.end, size):
            yield Chunk(offset, min(size, self.end - offset))


@dataclass(frozen=True)
class ChunkOutcome:
    """Result of one attempt at one chunk."""

    offset: int
    data: bytes | None = None
    error: ErrorKind | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, offset: int, data: bytes = b"") -> ChunkOutcome:
        return cls(offset=offset, data=data)

    @classmethod
    def failure(cls, offset: int, error: ErrorKind, detail: str = "") -> ChunkOutcome:
        return cls(offset=offset, error=error, detail=detail)


class PagingStrategy:
    """Base plan: a single window read in 64-byte and written in 16-byte chunks."""

    module_type: ModuleType = ModuleType.DDR3_OR_OTHER
    rswp_policy: RswpPolicy = RswpPolicy.NONE

    def __init__(self, size: int, config: PagingConfig) -> None:
        self.size = size
        self.config = config

    @property
    def read_chunk(self) -> int:
        return self.config.read_chunk

    @property
    def write_chunk(self) -> int:
        return self.config.write_chunk

    @property
    def read_retries(self) -> int:
        return self.config.read_retries

    @property
    def write_retries(self) -> int:
        return self.config.write_retries

    def spans(self) -> list[PageSpan]:
        return [PageSpan(index=0, start=0, end=self.size)]

    def settle_before(self, span: PageSpan, writing: bool) -> float:
        """Delay to observe before the first chunk of *span*."""
        return 0.0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(size={self.size})"


class Ddr3Strategy(PagingStrategy):
    pass


class Ddr4Strategy(PagingStrategy):
    module_type = ModuleType.DDR4
    rswp_policy = RswpPolicy.TOLERATE

    def spans(self) -> list[PageSpan]:
        return [
            PageSpan(index=i, start=start, end=min(start + DDR4_PAGE_SIZE, self.size))
            for i, start in enumerate(range(0, self.size, DDR4_PAGE_SIZE))
        ]

    def settle_before(self, span: PageSpan, writing: bool) -> float:
        if writing and span.start >= DDR4_PAGE_SIZE:
            return self.config.ddr4_boundary_settle_s
        return 0.0


class Ddr5Strategy(PagingStrategy):
    module_type = ModuleType.DDR5
    rswp_policy = RswpPolicy.REQUIRE

    def __init__(self, size: int, config: PagingConfig) -> None:
        super().__init__(size, config)
        page = config.ddr5_page_size
        self.page_count = (size + page - 1) // page

    @property
    def read_chunk(self) -> int:
        return self.config.ddr5_read_chunk

    @property
    def read_retries(self) -> int:
        return self.config.ddr5_retries

    def spans(self) -> list[PageSpan]:
        page = self.config.ddr5_page_size
        return [
            PageSpan(index=p, start=p * page, end=min((p + 1) * page, self.size), select=p)
            for p in range(self.page_count)
        ]

    def settle_before(self, span: PageSpan, writing: bool) -> float:
        return self.config.ddr5_page_settle_s

    def __repr__(self) -> str:
        return f"Ddr5Strategy(size={self.size}, page_count={self.page_count})"


_STRATEGIES: dict[ModuleType, type[PagingStrategy]] = {
    ModuleType.DDR3_OR_OTHER: Ddr3Strategy,
    ModuleType.DDR4: Ddr4Strategy,
    ModuleType.DDR5: Ddr5Strategy,
}


def strategy_for(info: ModuleInfo, config: PagingConfig | None = None) -> PagingStrategy:
    """Pick the paging plan for a detected module."""
    if info.module_type == ModuleType.NOT_DETECTED or info.size <= 0:
        raise InvalidArgumentError(
            f"No SPD image to page at {info.address_hex}",
            address=info.address,
            module_type=info.module_type.value,
            size=info.size,
        )
    return _STRATEGIES[info.module_type](info.size, config or PagingConfig())


def attempt(offset: int, action: Callable[[], ChunkOutcome]) -> ChunkOutcome:
    """Run one chunk attempt, turning retryable errors into a failed outcome.

    Errors that no retry can fix (bad arguments, unsupported hardware, a
    dead transport) propagate unchanged.
    """
    try:
        return action()
    except SpdToolError as exc:
        if not exc.retryable:
            raise
        return ChunkOutcome.failure(offset, exc.kind, str(exc))


def run_with_retry(
    offset: int,
    action: Callable[[], ChunkOutcome],
    retries: int,
    config: PagingConfig,
    operation: str,
    **context: object,
) -> ChunkOutcome:
    """Attempt a chunk up to *retries* times with linear backoff.

    A failed outcome waits ``failure_backoff_s * n`` and a raised
    retryable error waits ``error_backoff_s * n`` before attempt n + 1.

    Raises:
        ExhaustedRetriesError: Every attempt failed; carries *offset*.
    """
    outcome = ChunkOutcome.failure(offset, ErrorKind.DEVICE_REPORTED_FAILURE)
    for n in range(1, retries + 1):
        outcome = attempt(offset, action)
        if outcome.ok:
            if n > 1:
                logger.info("chunk_recovered", operation=operation, offset=offset, attempt=n)
            return outcome
        logger.warning(
            "chunk_retry",
            operation=operation,
            offset=offset,
            attempt=n,
            retries=retries,
            error=outcome.error.value if outcome.error else None,
            detail=outcome.detail,
        )
        if n < retries:
            if outcome.error == ErrorKind.DEVICE_REPORTED_FAILURE:
                time.sleep(config.failure_backoff_s * n)
            else:
                time.sleep(config.error_backoff_s * n)

    raise ExhaustedRetriesError(
        f"{operation} failed at offset 0x{offset:03X} after {retries} attempts",
        offset=offset,
        attempts=retries,
        last_kind=outcome.error,
        operation=operation,
        **context,
    )
