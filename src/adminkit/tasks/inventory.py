"""
Host inventory over WMI/CIM.
"""

from __future__ import annotations

from typing import Any

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import get_logger
from adminkit.core.models import HostInventory, LogicalDisk
from adminkit.core.safety import OperationType
from adminkit.platform.base import CommandError
from adminkit.platform.powershell import PowerShell, quote

logger = get_logger(__name__)

LOCAL_HOST = "localhost"


def query_wmi(
    powershell: PowerShell,
    class_name: str,
    properties: list[str],
    computer: str | None = None,
    filter_expr: str | None = None,
) -> list[dict[str, Any]]:
    """Run Get-CimInstance and return the selected properties."""
    parts = [f"Get-CimInstance -ClassName {class_name}"]
    if computer and computer.lower() != LOCAL_HOST:
        parts.append(f"-ComputerName {quote(computer)}")
    if filter_expr:
        parts.append(f"-Filter {quote(filter_expr)}")
    script = " ".join(parts) + f" | Select-Object {', '.join(properties)}"
    return powershell.run_json(script)


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _cim_datetime(value: Any) -> str | None:
    # ConvertTo-Json renders CIM datetimes either as a string or as
    # {"value": "/Date(...)/", "DateTime": "..."}.
    if isinstance(value, dict):
        return value.get("DateTime") or value.get("value")
    return str(value) if value else None


class WmiInventory:
    """Collects HostInventory records."""

    def __init__(self, powershell: PowerShell) -> None:
        self.powershell = powershell

    def collect(self, host: str = LOCAL_HOST) -> HostInventory:
        """Query each class separately so one failure does not lose the rest."""
        inventory = HostInventory(host=host)

        try:
            rows = query_wmi(
                self.powershell,
                "Win32_OperatingSystem",
                ["Caption", "Version", "LastBootUpTime"],
                computer=host,
            )
            if rows:
                inventory.os_caption = rows[0].get("Caption")
                inventory.os_version = rows[0].get("Version")
                inventory.last_boot = _cim_datetime(rows[0].get("LastBootUpTime"))
        except CommandError as e:
            inventory.errors.append(f"Win32_OperatingSystem: {e}")

        try:
            rows = query_wmi(
                self.powershell,
                "Win32_ComputerSystem",
                ["Manufacturer", "Model", "TotalPhysicalMemory"],
                computer=host,
            )
            if rows:
                inventory.manufacturer = rows[0].get("Manufacturer")
                inventory.model = rows[0].get("Model")
                inventory.memory_bytes = _to_int(rows[0].get("TotalPhysicalMemory"))
        except CommandError as e:
            inventory.errors.append(f"Win32_ComputerSystem: {e}")

        try:
            rows = query_wmi(
                self.powershell,
                "Win32_LogicalDisk",
                ["DeviceID", "Size", "FreeSpace", "VolumeName"],
                computer=host,
                filter_expr="DriveType=3",
            )
            inventory.disks = [
                LogicalDisk(
                    device_id=row.get("DeviceID", ""),
                    size_bytes=_to_int(row.get("Size")) or 0,
                    free_bytes=_to_int(row.get("FreeSpace")) or 0,
                    volume_name=row.get("VolumeName") or "",
                )
                for row in rows
            ]
        except CommandError as e:
            inventory.errors.append(f"Win32_LogicalDisk: {e}")

        if inventory.errors:
            logger.warning("Inventory incomplete", host=host, errors=inventory.errors)
        return inventory


class InventoryJob(Job[list[HostInventory]]):
    """Collect inventory from several hosts."""

    operation_type = OperationType.READ_ONLY

    def __init__(self, inventory: WmiInventory, hosts: list[str]) -> None:
        super().__init__(name="inventory", description=f"Inventory {len(hosts)} host(s)")
        self.inventory = inventory
        self.hosts = hosts or [LOCAL_HOST]

    def get_plan(self) -> str:
        return "Query Win32_OperatingSystem, Win32_ComputerSystem, Win32_LogicalDisk on " + ", ".join(
            self.hosts
        )

    def execute(self, context: JobContext) -> list[HostInventory]:
        results = []
        context.update_progress(current=0, total=len(self.hosts), stage="inventory")
        for index, host in enumerate(self.hosts, 1):
            context.check_cancelled()
            item = self.inventory.collect(host)
            for error in item.errors:
                context.add_warning(f"{host}: {error}")
            results.append(item)
            context.update_progress(current=index, message=host)
        return results
