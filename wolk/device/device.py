"""Composition root wiring the device protocols to one transport."""

from __future__ import annotations

from loguru import logger

from wolk.config.schema import WolkConfig
from wolk.device.downloader import UrlFileDownloader
from wolk.device.file_management import FileManagementProtocol
from wolk.device.firmware import FirmwareInstaller, FirmwareUpdateCoordinator
from wolk.device.store import FileStore
from wolk.device.transport import Transport


class WolkDevice:
    """Owns the file store, file management and firmware update for one device.

    Parameters
    ----------
    config:
        Device configuration.
    transport:
        Connected transport for this device.
    installer:
        Firmware installer; firmware update is disabled when omitted.
    """

    def __init__(
        self,
        config: WolkConfig,
        transport: Transport,
        installer: FirmwareInstaller | None = None,
    ) -> None:
        if config.device_key and config.device_key != transport.device_key:
            raise ValueError(
                f"config device key {config.device_key!r} does not match "
                f"transport device key {transport.device_key!r}"
            )
        self.config = config
        self.transport = transport
        self.file_store = FileStore(config.file_transfer.file_dir)
        self.file_management = FileManagementProtocol(
            transport,
            self.file_store,
            config.file_transfer,
            downloader=UrlFileDownloader(
                block_size=config.url_download.block_size,
                timeout=config.url_download.timeout,
                follow_redirects=config.url_download.follow_redirects,
            ),
        )
        self.firmware: FirmwareUpdateCoordinator | None = None
        if installer is not None:
            self.firmware = FirmwareUpdateCoordinator(transport, self.file_store, installer)

    async def start(self) -> None:
        """Subscribe every protocol and announce the firmware version."""
        await self.file_management.subscribe()
        if self.firmware is not None:
            await self.firmware.subscribe()
            await self.firmware.installer.on_firmware_version(self.firmware)
        logger.info(
            "[Device] {} started (firmware update {})",
            self.transport.device_key, "enabled" if self.firmware else "disabled",
        )
