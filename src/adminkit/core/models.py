"""
AdminKit data models.

Plain records passed between the CLI, jobs and the tool adapters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ==================== Active Directory ====================


class GroupScope(Enum):
    """AD group scope, values as accepted by New-ADGroup."""

    DOMAIN_LOCAL = "DomainLocal"
    GLOBAL = "Global"
    UNIVERSAL = "Universal"

    @classmethod
    def from_string(cls, value: str) -> GroupScope:
        normalized = value.replace("_", "").replace("-", "").lower()
        for scope in cls:
            if scope.value.lower() == normalized:
                return scope
        raise ValueError(f"Unknown group scope: {value}")


class GroupCategory(Enum):
    SECURITY = "Security"
    DISTRIBUTION = "Distribution"


@dataclass
class GroupSpec:
    """A group to create in Active Directory."""

    name: str
    path: str = ""  # OU distinguished name; empty means the default container
    scope: GroupScope = GroupScope.GLOBAL
    category: GroupCategory = GroupCategory.SECURITY
    description: str = ""
    sam_account_name: str | None = None
    members: list[str] = field(default_factory=list)

    @property
    def sam(self) -> str:
        return self.sam_account_name or self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sam_account_name": self.sam,
            "path": self.path,
            "scope": self.scope.value,
            "category": self.category.value,
            "description": self.description,
            "members": list(self.members),
        }


# ==================== NTFS ====================


class FileSystemRights(Enum):
    """icacls simple rights."""

    READ = "RX"
    READ_WRITE = "RW"
    MODIFY = "M"
    FULL = "F"

    @classmethod
    def from_string(cls, value: str) -> FileSystemRights:
        upper = value.strip().upper()
        for rights in cls:
            if rights.name == upper or rights.value == upper:
                return rights
        aliases = {"R": cls.READ, "READONLY": cls.READ, "CHANGE": cls.MODIFY, "FULLCONTROL": cls.FULL}
        if upper in aliases:
            return aliases[upper]
        raise ValueError(f"Unknown rights: {value}")


@dataclass
class AceSpec:
    """A single access control entry to grant or deny."""

    principal: str
    rights: FileSystemRights
    inherit: bool = True
    deny: bool = False

    def icacls_token(self) -> str:
        inheritance = "(OI)(CI)" if self.inherit else ""
        return f"{self.principal}:{inheritance}{self.rights.value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal": self.principal,
            "rights": self.rights.name,
            "inherit": self.inherit,
            "deny": self.deny,
        }


# ==================== DFS provisioning ====================


@dataclass
class ShareRequest:
    """A folder to publish as an SMB share and a DFS link."""

    share_name: str
    base_path: str
    namespace_root: str
    server: str | None = None
    link_name: str | None = None
    description: str = ""
    create_groups: bool = True

    @property
    def local_path(self) -> str:
        return self.base_path.rstrip("\\/") + "\\" + self.share_name

    @property
    def admin_path(self) -> str:
        """Path reachable from this machine, via the admin share when remote."""
        if not self.server:
            return self.local_path
        drive, _, rest = self.local_path.partition(":")
        return f"\\\\{self.server}\\{drive}$" + rest

    @property
    def unc_path(self) -> str:
        return f"\\\\{self.server or 'localhost'}\\{self.share_name}"

    @property
    def link_path(self) -> str:
        return self.namespace_root.rstrip("\\") + "\\" + (self.link_name or self.share_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "share_name": self.share_name,
            "server": self.server,
            "local_path": self.local_path,
            "unc_path": self.unc_path,
            "link_path": self.link_path,
            "create_groups": self.create_groups,
        }


class StepStatus(Enum):
    DONE = "done"
    SKIPPED = "skipped"
    DRY_RUN = "dry-run"
    FAILED = "failed"


@dataclass
class ProvisionStep:
    name: str
    status: StepStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status != StepStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "message": self.message}


# ==================== Mail forwarding ====================


@dataclass
class ForwardingRule:
    """Forward one mailbox's mail to another address."""

    mailbox: str
    forward_to: str
    keep_copy: bool = True
    external: bool = True  # SMTP forwarding instead of a recipient object

    def to_dict(self) -> dict[str, Any]:
        return {
            "mailbox": self.mailbox,
            "forward_to": self.forward_to,
            "keep_copy": self.keep_copy,
            "external": self.external,
        }


@dataclass
class ForwardingState:
    """Current forwarding configuration of a mailbox."""

    mailbox: str
    forwarding_address: str | None = None
    forwarding_smtp_address: str | None = None
    deliver_to_mailbox_and_forward: bool = False

    @property
    def is_forwarding(self) -> bool:
        return bool(self.forwarding_address or self.forwarding_smtp_address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mailbox": self.mailbox,
            "forwarding_address": self.forwarding_address,
            "forwarding_smtp_address": self.forwarding_smtp_address,
            "deliver_to_mailbox_and_forward": self.deliver_to_mailbox_and_forward,
        }


# ==================== Matroska ====================


class TrackType(Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLES = "subtitles"


@dataclass
class MkvTrack:
    """One track as reported by mkvmerge identification."""

    id: int
    type: TrackType
    codec: str
    language: str = "und"
    name: str = ""
    default: bool = False
    forced: bool = False
    channels: int | None = None
    sampling_frequency: int | None = None
    pixel_dimensions: str | None = None

    def signature(self) -> tuple[Any, ...]:
        """Fields compared when deciding whether two tracks are duplicates."""
        return (
            self.type,
            self.codec,
            self.language,
            self.name,
            self.channels,
            self.sampling_frequency,
            self.pixel_dimensions,
            self.forced,
        )

    def is_duplicate_of(self, other: MkvTrack) -> bool:
        return self.signature() == other.signature()

    @property
    def is_commentary(self) -> bool:
        return "commentary" in self.name.lower()

    def describe(self) -> str:
        parts = [f"#{self.id}", self.type.value, self.codec, self.language]
        if self.name:
            parts.append(f"'{self.name}'")
        if self.channels:
            parts.append(f"{self.channels}ch")
        if self.forced:
            parts.append("forced")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "codec": self.codec,
            "language": self.language,
            "name": self.name,
            "default": self.default,
            "forced": self.forced,
            "channels": self.channels,
            "sampling_frequency": self.sampling_frequency,
            "pixel_dimensions": self.pixel_dimensions,
        }


@dataclass
class TrackPolicy:
    """Which tracks survive a remux. Empty language lists keep everything."""

    audio_languages: list[str] = field(default_factory=list)
    subtitle_languages: list[str] = field(default_factory=list)
    keep_forced_subtitles: bool = True
    drop_commentary: bool = True
    drop_duplicates: bool = True


@dataclass
class RemovedTrack:
    track: MkvTrack
    reason: str


@dataclass
class TrackPlan:
    """Result of applying a TrackPolicy to a file's tracks."""

    tracks: list[MkvTrack]
    keep: dict[TrackType, list[int]] = field(default_factory=dict)
    removed: list[RemovedTrack] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def kept_ids(self, track_type: TrackType) -> list[int]:
        return self.keep.get(track_type, [])

    def present(self, track_type: TrackType) -> bool:
        return any(t.type == track_type for t in self.tracks)

    @property
    def changes_anything(self) -> bool:
        return bool(self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keep": {t.value: ids for t, ids in self.keep.items()},
            "removed": [
                {"track": r.track.to_dict(), "reason": r.reason} for r in self.removed
            ],
            "warnings": list(self.warnings),
        }


# ==================== Inventory ====================


@dataclass
class LogicalDisk:
    device_id: str
    size_bytes: int = 0
    free_bytes: int = 0
    volume_name: str = ""

    @property
    def used_percent(self) -> float:
        if self.size_bytes == 0:
            return 0.0
        return (self.size_bytes - self.free_bytes) / self.size_bytes * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "size_bytes": self.size_bytes,
            "free_bytes": self.free_bytes,
            "volume_name": self.volume_name,
        }


@dataclass
class HostInventory:
    """Hardware and OS facts gathered over WMI/CIM."""

    host: str
    os_caption: str | None = None
    os_version: str | None = None
    last_boot: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    memory_bytes: int | None = None
    disks: list[LogicalDisk] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "os_caption": self.os_caption,
            "os_version": self.os_version,
            "last_boot": self.last_boot,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "memory_bytes": self.memory_bytes,
            "disks": [d.to_dict() for d in self.disks],
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }
