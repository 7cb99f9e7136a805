"""PMIC discovery, register access and full register image reads."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from spdtool.core.paging import ChunkOutcome, PagingConfig, run_with_retry
from spdtool.device.client import SpdToolClient
from spdtool.device.models import PmicInfo
from spdtool.exceptions import ErrorKind, OperationCancelledError, SpdToolError
from spdtool.protocol.types import PMIC_ADDRESS_MAX, PMIC_ADDRESS_MIN, PMIC_REGISTER_COUNT
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)

# PMIC identification registers
_REG_DEVICE_ID = 0x00
_REG_REVISION = 0x03
_REG_OUTPUT_STATUS = 0x10

_SCAN_RETRY_DELAY_S = 1.0


def info_from_image(address: int, image: bytes) -> PmicInfo:
    """Decode identification fields from a register image."""
    return PmicInfo(
        address=address,
        device_id=(image[_REG_DEVICE_ID] << 8) | image[_REG_DEVICE_ID + 1] if len(image) > 1 else None,
        revision=image[_REG_REVISION] if len(image) > _REG_REVISION else None,
        output_status=image[_REG_OUTPUT_STATUS] if len(image) > _REG_OUTPUT_STATUS else None,
    )


class PmicManager:
    """PMIC operations at 0x48-0x4F on the module's I2C bus."""

    def __init__(self, client: SpdToolClient, config: PagingConfig | None = None) -> None:
        self._client = client
        self._config = config or PagingConfig()

    def scan(self, attempts: int = 3) -> list[int]:
        """Probe every PMIC address.

        The SPD5 hub can take a moment to bring the PMIC up, so the scan is
        repeated (1 s apart) until something answers or *attempts* run out.
        """
        found: list[int] = []
        for n in range(1, attempts + 1):
            if n > 1:
                time.sleep(_SCAN_RETRY_DELAY_S)
            for address in range(PMIC_ADDRESS_MIN, PMIC_ADDRESS_MAX + 1):
                if address in found:
                    continue
                try:
                    if self._client.probe_address(address):
                        found.append(address)
                except SpdToolError as exc:
                    if not exc.retryable:
                        raise
                    logger.debug("pmic_probe_failed", address=f"0x{address:02X}", error=str(exc))
            if found:
                break
        found.sort()
        logger.info("pmic_scan_complete", found=[f"0x{a:02X}" for a in found])
        return found

    def read_register(self, address: int, register: int) -> int | None:
        data = self._client.read_pmic(address, register, 1)
        return data[0] if data else None

    def write_register(self, address: int, register: int, value: int) -> bool:
        ok = self._client.write_pmic_register(address, register, value)
        logger.info(
            "pmic_register_written",
            address=f"0x{address:02X}",
            register=f"0x{register:02X}",
            value=f"0x{value:02X}",
            success=ok,
        )
        return ok

    def get_info(self, address: int) -> PmicInfo:
        """Read the device id (registers 0x00-0x01) and revision (0x03)."""
        ident = self._client.read_pmic(address, _REG_DEVICE_ID, 2)
        if ident is None or len(ident) < 2:
            return PmicInfo(address=address)
        return PmicInfo(
            address=address,
            device_id=(ident[0] << 8) | ident[1],
            revision=self.read_register(address, _REG_REVISION),
        )

    def read_entire(
        self,
        address: int,
        progress_callback: Callable[[int, int], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Read all 256 registers in paced 16-byte chunks.

        Raises:
            ExhaustedRetriesError: A chunk failed every attempt.
            OperationCancelledError: *cancel* was set between chunks.
        """
        cfg = self._config
        logger.info("pmic_read_start", address=f"0x{address:02X}")
        image = bytearray()
        for offset in range(0, PMIC_REGISTER_COUNT, cfg.pmic_chunk):
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError(
                    f"pmic_read cancelled at offset 0x{offset:02X}", offset=offset
                )
            length = min(cfg.pmic_chunk, PMIC_REGISTER_COUNT - offset)

            def _read(offset=offset, length=length) -> ChunkOutcome:
                data = self._client.read_pmic(address, offset, length)
                if data is None or len(data) != length:
                    return ChunkOutcome.failure(
                        offset, ErrorKind.DEVICE_REPORTED_FAILURE, "read failed"
                    )
                return ChunkOutcome.success(offset, data)

            outcome = run_with_retry(
                offset, _read, cfg.read_retries, cfg, "pmic_read", address=address
            )
            image += outcome.data or b""
            if progress_callback is not None:
                progress_callback(len(image), PMIC_REGISTER_COUNT)
            time.sleep(cfg.pmic_chunk_delay_s)

        logger.info("pmic_read_complete", address=f"0x{address:02X}", size=len(image))
        return bytes(image)
