"""
Tests for adminkit.tasks.inventory module.
"""

import pytest

from adminkit.core.job import JobRunner
from adminkit.core.models import LogicalDisk
from adminkit.platform.powershell import PowerShell
from adminkit.tasks.inventory import InventoryJob, WmiInventory, query_wmi

OS = {
    "Caption": "Microsoft Windows Server 2022 Standard",
    "Version": "10.0.20348",
    "LastBootUpTime": {"value": "/Date(1700000000000)/", "DateTime": "Tuesday, November 14, 2023 10:13:20 PM"},
}
SYSTEM = {"Manufacturer": "VMware, Inc.", "Model": "VMware7,1", "TotalPhysicalMemory": "17179332608"}
DISKS = [
    {"DeviceID": "C:", "Size": 107374182400, "FreeSpace": 53687091200, "VolumeName": ""},
    {"DeviceID": "D:", "Size": 536870912000, "FreeSpace": 107374182400, "VolumeName": "Data"},
]


@pytest.fixture
def inventory(fake_runner) -> WmiInventory:
    return WmiInventory(PowerShell(fake_runner))


class TestQueryWmi:
    def test_local_query(self, fake_runner) -> None:
        query_wmi(PowerShell(fake_runner), "Win32_BIOS", ["SerialNumber"])
        script = fake_runner.calls[0][-1]
        assert "Get-CimInstance -ClassName Win32_BIOS | Select-Object SerialNumber" in script
        assert "-ComputerName" not in script

    def test_remote_query_with_filter(self, fake_runner) -> None:
        query_wmi(
            PowerShell(fake_runner),
            "Win32_LogicalDisk",
            ["DeviceID"],
            computer="fs01",
            filter_expr="DriveType=3",
        )
        assert "-ComputerName 'fs01' -Filter 'DriveType=3'" in fake_runner.calls[0][-1]


class TestWmiInventory:
    def test_collect(self, inventory: WmiInventory, fake_runner) -> None:
        fake_runner.queue_json("Win32_OperatingSystem", OS)
        fake_runner.queue_json("Win32_ComputerSystem", SYSTEM)
        fake_runner.queue_json("Win32_LogicalDisk", DISKS)

        item = inventory.collect("fs01")

        assert item.host == "fs01"
        assert item.os_caption == "Microsoft Windows Server 2022 Standard"
        assert item.last_boot == "Tuesday, November 14, 2023 10:13:20 PM"
        assert item.memory_bytes == 17179332608
        assert [d.device_id for d in item.disks] == ["C:", "D:"]
        assert item.disks[0].used_percent == pytest.approx(50.0)
        assert item.errors == []

    def test_one_failed_class_keeps_the_rest(self, inventory: WmiInventory, fake_runner) -> None:
        fake_runner.queue_json("Win32_OperatingSystem", OS)
        fake_runner.queue("Win32_ComputerSystem", returncode=1, stderr="Access denied")
        fake_runner.queue_json("Win32_LogicalDisk", DISKS[:1])

        item = inventory.collect("fs01")

        assert item.os_version == "10.0.20348"
        assert item.model is None
        assert len(item.disks) == 1
        assert len(item.errors) == 1
        assert item.errors[0].startswith("Win32_ComputerSystem:")

    def test_plain_datetime(self, inventory: WmiInventory, fake_runner) -> None:
        fake_runner.queue_json("Win32_OperatingSystem", dict(OS, LastBootUpTime="2023-11-14T22:13:20"))
        assert inventory.collect().last_boot == "2023-11-14T22:13:20"

    def test_empty_disk(self) -> None:
        assert LogicalDisk("E:").used_percent == 0.0


class TestInventoryJob:
    def test_defaults_to_local_host(self, inventory: WmiInventory) -> None:
        job = InventoryJob(inventory, [])
        assert job.hosts == ["localhost"]
        assert job.get_plan().endswith("on localhost")

    def test_errors_become_warnings(self, inventory: WmiInventory, fake_runner) -> None:
        fake_runner.respond("'dead01'", returncode=1, stderr="The RPC server is unavailable.")

        result = JobRunner().run_sync(InventoryJob(inventory, ["fs01", "dead01"]))

        assert result.success is True
        assert len(result.data) == 2
        assert len(result.warnings) == 3
        assert all(w.startswith("dead01: ") for w in result.warnings)
