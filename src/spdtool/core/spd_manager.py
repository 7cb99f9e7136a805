"""Whole-image SPD operations: read, write, verify and RSWP block maps."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from spdtool.core.paging import (
    ChunkOutcome,
    PageSpan,
    PagingConfig,
    PagingStrategy,
    RswpPolicy,
    attempt,
    run_with_retry,
    strategy_for,
)
from spdtool.device.client import SpdToolClient
from spdtool.device.models import (
    ModuleInfo,
    RswpBlockStatus,
    RswpMap,
    VerifyResult,
    WriteReport,
)
from spdtool.exceptions import (
    ErrorKind,
    ExhaustedRetriesError,
    InvalidArgumentError,
    OperationCancelledError,
    PartialWriteError,
    SpdToolError,
    WriteProtectionError,
)
from spdtool.protocol.types import RSWP_BLOCK_COUNT, HubRegister
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


def _check_cancel(cancel: threading.Event | None, offset: int, operation: str) -> None:
    if cancel is not None and cancel.is_set():
        logger.info("operation_cancelled", operation=operation, offset=offset)
        raise OperationCancelledError(f"{operation} cancelled at offset 0x{offset:03X}", offset=offset)


class SpdManager:
    """Whole-image SPD reads, writes and protection built from single commands.

    The paging plan is chosen once per call from the module's detected
    type; pass ``info`` to skip detection when it is already known.
    """

    def __init__(self, client: SpdToolClient, config: PagingConfig | None = None) -> None:
        self._client = client
        self._config = config or PagingConfig()

    @property
    def config(self) -> PagingConfig:
        return self._config

    def _plan(self, address: int, info: ModuleInfo | None) -> tuple[ModuleInfo, PagingStrategy]:
        if info is None:
            info = self._client.detect_module(address)
        elif info.address != address:
            raise InvalidArgumentError(
                f"Module info is for 0x{info.address:02X}, not 0x{address:02X}",
                address=address,
            )
        return info, strategy_for(info, self._config)

    def _select_page(self, address: int, span: PageSpan, strategy: PagingStrategy) -> None:
        if span.select is None:
            return

        def _select() -> ChunkOutcome:
            if self._client.write_hub_register(address, HubRegister.MR11, span.select):
                return ChunkOutcome.success(span.start)
            return ChunkOutcome.failure(
                span.start, ErrorKind.DEVICE_REPORTED_FAILURE, "page select rejected"
            )

        logger.debug("page_select", address=f"0x{address:02X}", page=span.select)
        run_with_retry(
            span.start,
            _select,
            strategy.read_retries,
            self._config,
            "page_select",
            address=address,
            page=span.select,
        )

    def _enter_span(
        self, address: int, span: PageSpan, strategy: PagingStrategy, writing: bool
    ) -> None:
        self._select_page(address, span, strategy)
        settle = strategy.settle_before(span, writing)
        if settle > 0:
            time.sleep(settle)

    # --- Read ---

    def read_entire(
        self,
        address: int,
        info: ModuleInfo | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Read the full SPD image.

        Raises:
            ExhaustedRetriesError: A chunk failed every attempt; ``offset``
                is where. Nothing read so far is returned.
            OperationCancelledError: *cancel* was set between chunks.
        """
        info, strategy = self._plan(address, info)
        logger.info(
            "spd_read_start",
            address=info.address_hex,
            module_type=info.module_type.value,
            size=info.size,
            strategy=repr(strategy),
        )

        image = bytearray()
        for span in strategy.spans():
            _check_cancel(cancel, span.start, "spd_read")
            self._enter_span(address, span, strategy, writing=False)
            for chunk in span.chunks(strategy.read_chunk):
                _check_cancel(cancel, chunk.offset, "spd_read")

                def _read(chunk=chunk) -> ChunkOutcome:
                    data = self._client.read_spd(address, chunk.offset, chunk.length)
                    if data is None:
                        return ChunkOutcome.failure(
                            chunk.offset, ErrorKind.DEVICE_REPORTED_FAILURE, "read failed"
                        )
                    if len(data) != chunk.length:
                        return ChunkOutcome.failure(
                            chunk.offset,
                            ErrorKind.DEVICE_REPORTED_FAILURE,
                            f"short read {len(data)}/{chunk.length}",
                        )
                    return ChunkOutcome.success(chunk.offset, data)

                outcome = run_with_retry(
                    chunk.offset,
                    _read,
                    strategy.read_retries,
                    self._config,
                    "spd_read",
                    address=address,
                    page=span.index,
                )
                image += outcome.data or b""
                if progress_callback is not None:
                    progress_callback(len(image), info.size)

        logger.info("spd_read_complete", address=info.address_hex, size=len(image))
        return bytes(image[: info.size])

    # --- Write ---

    def _clear_protection(self, address: int, strategy: PagingStrategy) -> bool:
        policy = strategy.rswp_policy
        if policy == RswpPolicy.NONE:
            return False
        try:
            cleared = self._client.clear_rswp(address)
            error = "" if cleared else "device refused"
        except SpdToolError as exc:
            if not (exc.retryable or exc.kind == ErrorKind.UNSUPPORTED_HARDWARE):
                raise
            cleared, error = False, str(exc)

        if cleared:
            return True
        if policy == RswpPolicy.REQUIRE:
            raise WriteProtectionError(
                f"Could not clear write protection at 0x{address:02X}: {error}",
                address=address,
                module_type=strategy.module_type.value,
            )
        logger.warning("rswp_clear_tolerated", address=f"0x{address:02X}", error=error)
        return False

    def _write_bytes_individually(self, address: int, offset: int, data: bytes) -> bool:
        ok = True
        for i, value in enumerate(data):

            def _write_byte(o=offset + i, v=value) -> ChunkOutcome:
                if self._client.write_spd_byte(address, o, v):
                    return ChunkOutcome.success(o)
                return ChunkOutcome.failure(o, ErrorKind.DEVICE_REPORTED_FAILURE)

            outcome = attempt(offset + i, _write_byte)
            if not outcome.ok:
                logger.warning("byte_write_failed", address=f"0x{address:02X}", offset=offset + i)
                ok = False
        return ok

    def write_entire(
        self,
        address: int,
        data: bytes,
        info: ModuleInfo | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> WriteReport:
        """Program the full SPD image.

        Protection is cleared first on DDR4 (failure tolerated) and DDR5
        (failure fatal). A chunk whose page write fails every attempt is
        retried byte by byte.

        Raises:
            InvalidArgumentError: *data* is not exactly the module size.
            WriteProtectionError: DDR5 protection could not be cleared.
            ExhaustedRetriesError: More than ``max_write_errors`` chunks
                could not be written; the write stops at that offset.
            PartialWriteError: The write finished but some chunks were
                never programmed.
            OperationCancelledError: *cancel* was set between chunks.
        """
        info, strategy = self._plan(address, info)
        if len(data) != info.size:
            raise InvalidArgumentError(
                f"Data size {len(data)} doesn't match expected SPD size {info.size}",
                address=address,
                size=len(data),
                expected=info.size,
            )

        logger.info(
            "spd_write_start",
            address=info.address_hex,
            module_type=info.module_type.value,
            size=info.size,
        )
        rswp_cleared = self._clear_protection(address, strategy)

        cfg = self._config
        written = 0
        chunks = 0
        retried = 0
        fallback: list[int] = []
        failed: list[int] = []

        for span in strategy.spans():
            _check_cancel(cancel, span.start, "spd_write")
            self._enter_span(address, span, strategy, writing=True)
            for chunk in span.chunks(strategy.write_chunk):
                _check_cancel(cancel, chunk.offset, "spd_write")
                payload = bytes(data[chunk.offset:chunk.offset + chunk.length])
                tries = 0

                def _write(chunk=chunk, payload=payload) -> ChunkOutcome:
                    nonlocal tries
                    tries += 1
                    if self._client.write_spd_page(address, chunk.offset, payload):
                        return ChunkOutcome.success(chunk.offset)
                    return ChunkOutcome.failure(
                        chunk.offset, ErrorKind.DEVICE_REPORTED_FAILURE, "page write refused"
                    )

                try:
                    run_with_retry(
                        chunk.offset,
                        _write,
                        strategy.write_retries,
                        cfg,
                        "spd_write",
                        address=address,
                        page=span.index,
                    )
                    if tries > 1:
                        retried += 1
                except ExhaustedRetriesError:
                    logger.warning(
                        "write_fallback_single_byte",
                        address=info.address_hex,
                        offset=chunk.offset,
                        length=chunk.length,
                    )
                    fallback.append(chunk.offset)
                    if not self._write_bytes_individually(address, chunk.offset, payload):
                        failed.append(chunk.offset)
                        if len(failed) > cfg.max_write_errors:
                            logger.error(
                                "spd_write_aborted",
                                address=info.address_hex,
                                offset=chunk.offset,
                                errors=len(failed),
                            )
                            raise ExhaustedRetriesError(
                                f"Multiple write failures, stopping at offset 0x{chunk.offset:03X}",
                                offset=chunk.offset,
                                attempts=strategy.write_retries,
                                last_kind=ErrorKind.DEVICE_REPORTED_FAILURE,
                                address=address,
                                failed_offsets=list(failed),
                            ) from None

                chunks += 1
                written += chunk.length
                if progress_callback is not None:
                    progress_callback(written, info.size)
                time.sleep(cfg.inter_write_delay_s)

        if failed:
            raise PartialWriteError(
                f"{len(failed)} chunk(s) could not be written at 0x{address:02X}",
                failed_offsets=failed,
                attempts=strategy.write_retries,
                address=address,
            )

        logger.info(
            "spd_write_complete",
            address=info.address_hex,
            size=written,
            retried_chunks=retried,
            fallback_chunks=len(fallback),
        )
        return WriteReport(
            address=address,
            module_type=info.module_type,
            bytes_written=written,
            chunks=chunks,
            retried_chunks=retried,
            fallback_chunks=fallback,
            rswp_cleared=rswp_cleared,
        )

    # --- Verify ---

    def verify(
        self,
        address: int,
        expected: bytes,
        info: ModuleInfo | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> VerifyResult:
        """Read the image back and list every offset that differs from *expected*."""
        actual = self.read_entire(address, info, progress_callback, cancel)
        mismatched = [
            i for i in range(max(len(actual), len(expected)))
            if i >= len(actual) or i >= len(expected) or actual[i] != expected[i]
        ]
        logger.info(
            "spd_verify_complete",
            address=f"0x{address:02X}",
            size=len(actual),
            mismatches=len(mismatched),
        )
        return VerifyResult(address=address, size=len(actual), mismatched_offsets=mismatched)

    # --- Reversible write protection ---

    def rswp_map(self, address: int) -> RswpMap:
        """Protection state of all 16 blocks."""
        return RswpMap(
            address=address,
            blocks=[
                RswpBlockStatus(block=b, protected=self._client.get_rswp(address, b))
                for b in range(RSWP_BLOCK_COUNT)
            ],
        )

    def toggle_rswp(self, address: int, block: int) -> bool:
        """Protect *block* if it is clear, otherwise clear every block.

        The firmware can only clear protection for all blocks at once.
        Returns the block's protection state afterwards.
        """
        if self._client.get_rswp(address, block):
            logger.info("rswp_clear_all", address=f"0x{address:02X}", block=block)
            self._client.clear_rswp(address)
        else:
            logger.info("rswp_set", address=f"0x{address:02X}", block=block)
            self._client.set_rswp(address, block)
        return self._client.get_rswp(address, block)
