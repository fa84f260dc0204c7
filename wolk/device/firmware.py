"""Firmware update commands and status reporting.

The platform tells the device to install a previously transferred file, or
to abort an installation. ``FirmwareUpdateCoordinator`` receives those
commands, checks that the file exists, and hands the work to a pluggable
``FirmwareInstaller``. The installer reports progress back through the
coordinator it is given on every call.

Protocol summary
----------------
Platform sends ``firmware_update_install {fileName}`` → device replies
``firmware_update_status {status: INSTALLATION}`` (or ``{error:
FILE_NOT_PRESENT}``) → installer eventually publishes ``COMPLETED`` /
``ERROR``. After every status report the device publishes its current
firmware version on ``firmware_version_update``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from wolk.device import protocol
from wolk.device.errors import ErrorKind, TransportError
from wolk.device.protocol import UpdateInit, UpdateStatus, decode_payload, encode_payload
from wolk.device.resilience import supervised_task
from wolk.device.transport import Transport


class FirmwareUpdateStatus(str, Enum):
    """Installation status as reported to the platform."""

    INSTALLATION = "INSTALLATION"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"
    ERROR = "ERROR"


class CoordinatorState(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"


class FileLookup(Protocol):
    """Anything that can tell whether a file has been received."""

    def get_file(self, name: str) -> Path | None: ...


# ---------------------------------------------------------------------------
# Installer capability
# ---------------------------------------------------------------------------

class FirmwareInstaller(ABC):
    """Platform-specific installation logic.

    Every hook receives the coordinator; use its ``publish_status``,
    ``publish_error`` and ``publish_firmware_version`` to report back.
    """

    async def on_install_command_received(
        self, coordinator: FirmwareUpdateCoordinator, file_name: str,
    ) -> None:
        """Install *file_name*. ``INSTALLATION`` has already been published."""

    async def on_abort_command_received(self, coordinator: FirmwareUpdateCoordinator) -> None:
        """Stop an installation in progress. ``ABORTED`` has already been published."""

    @abstractmethod
    async def on_firmware_version(self, coordinator: FirmwareUpdateCoordinator) -> None:
        """Publish the running firmware version with ``publish_firmware_version``."""


class NoopFirmwareInstaller(FirmwareInstaller):
    """Installer that installs nothing and always reports a fixed version."""

    def __init__(self, version: str = "1.0.0") -> None:
        self.version = version

    async def on_firmware_version(self, coordinator: FirmwareUpdateCoordinator) -> None:
        await coordinator.publish_firmware_version(self.version)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class FirmwareUpdateCoordinator:
    """Handles install/abort commands and publishes status and version reports.

    Parameters
    ----------
    transport:
        Publish/subscribe transport scoped to this device.
    file_store:
        Used only to check that the file to install exists.
    installer:
        The installation capability.
    """

    def __init__(
        self,
        transport: Transport,
        file_store: FileLookup,
        installer: FirmwareInstaller,
    ) -> None:
        if transport is None:
            raise ValueError("the transport must not be None")
        if file_store is None:
            raise ValueError("the file store must not be None")
        if installer is None:
            raise ValueError("the firmware installer must not be None")
        self.transport = transport
        self.file_store = file_store
        self.installer = installer
        self.state = CoordinatorState.IDLE
        self._tasks: set[asyncio.Task] = set()

    # -- subscriptions -------------------------------------------------------

    async def subscribe(self) -> None:
        """Subscribe to the install and abort command topics."""
        key = self.transport.device_key
        await self.transport.subscribe(
            protocol.topic(protocol.FIRMWARE_UPDATE_INSTALL, key), self._on_install_message,
        )
        await self.transport.subscribe(
            protocol.topic(protocol.FIRMWARE_UPDATE_ABORT, key), self._on_abort_message,
        )
        logger.info("[Firmware] subscribed to install/abort commands for {}", key)

    def _on_install_message(self, topic: str, payload: bytes) -> None:
        try:
            init = UpdateInit.from_dict(decode_payload(payload))
        except ValueError as exc:
            logger.warning("[Firmware] ignoring install command on {!r}: {}", topic, exc)
            return
        self._spawn(self.on_install_command(init.file_name), name=f"firmware-install-{init.file_name}")

    def _on_abort_message(self, topic: str, payload: bytes) -> None:
        self._spawn(self.on_abort_command(), name="firmware-abort")

    def _spawn(self, coro: Any, *, name: str) -> None:
        task = supervised_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def join(self) -> None:
        """Wait for every command handler started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- commands ------------------------------------------------------------

    async def on_install_command(self, file_name: str) -> None:
        """Start installing *file_name* if it has been received."""
        if self.file_store.get_file(file_name) is None:
            logger.error("[Firmware] install requested for missing file {!r}", file_name)
            await self._report(UpdateStatus(error=ErrorKind.FILE_NOT_PRESENT))
            return

        self.state = CoordinatorState.INSTALLING
        logger.info("[Firmware] installing {!r}", file_name)
        await self.publish_status(FirmwareUpdateStatus.INSTALLATION)
        try:
            await self.installer.on_install_command_received(self, file_name)
        except TransportError:
            raise
        except Exception as exc:
            logger.error("[Firmware] installer failed on {!r}: {!r}", file_name, exc)
            await self.publish_error(ErrorKind.INSTALLATION_FAILED)

    async def on_abort_command(self) -> None:
        """Report ``ABORTED`` whatever the current state, then tell the installer."""
        logger.info("[Firmware] abort requested (state={})", self.state.value)
        await self.publish_status(FirmwareUpdateStatus.ABORTED)
        await self.installer.on_abort_command_received(self)

    # -- reports -------------------------------------------------------------

    async def publish_status(self, status: FirmwareUpdateStatus) -> None:
        """Publish *status*, then the current firmware version."""
        if status != FirmwareUpdateStatus.INSTALLATION:
            self.state = CoordinatorState.IDLE
        await self._report(UpdateStatus(status=status))

    async def publish_error(self, error: ErrorKind) -> None:
        """Publish *error*, then the current firmware version."""
        self.state = CoordinatorState.IDLE
        await self._report(UpdateStatus(error=error))

    async def publish_firmware_version(self, version: str) -> None:
        """Publish the raw firmware version string."""
        await self.transport.publish(
            protocol.topic(protocol.FIRMWARE_VERSION_UPDATE, self.transport.device_key),
            version.encode(),
        )
        logger.debug("[Firmware] published version {!r}", version)

    async def _report(self, update: UpdateStatus) -> None:
        await self.transport.publish(
            protocol.topic(protocol.FIRMWARE_UPDATE_STATUS, self.transport.device_key),
            encode_payload(update.to_dict()),
        )
        logger.info("[Firmware] reported {}", update.to_dict())
        await self.installer.on_firmware_version(self)
