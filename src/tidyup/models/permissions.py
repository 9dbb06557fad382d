"""Permission analysis dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class PermissionVerdict:
    """Permission classification of a single path.

    Computed fresh for each deletion attempt; never cached, since
    ownership and modes may change between scan and delete.
    """

    path: str
    exists: bool = False
    is_dir: bool = False
    is_symlink: bool = False
    symlink_target: str = ""
    is_special: bool = False
    special_kind: str = ""
    uid: int = -1
    gid: int = -1
    mode: int = 0
    parent_writable: bool = False
    file_writable: bool = False
    can_delete: bool = False
    requires_sudo: bool = False
    reason: str = ""


@dataclass(slots=True)
class PermissionReport:
    """Partition of a path set by who (if anyone) may delete each path."""

    normal: list[str] = field(default_factory=list)
    requires_sudo: list[str] = field(default_factory=list)
    special: dict[str, str] = field(default_factory=dict)
    inaccessible: dict[str, str] = field(default_factory=dict)
    total_normal_size: int = 0
    total_sudo_size: int = 0
    details: dict[str, PermissionVerdict] = field(default_factory=dict)

    @property
    def total_paths(self) -> int:
        return len(self.normal) + len(self.requires_sudo) + len(self.special) + len(self.inaccessible)
