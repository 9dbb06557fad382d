"""Per-OS locations the scanners look at."""

from __future__ import annotations

import getpass
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from tidyup.utils import xdg_cache_home, xdg_data_home


class UnsupportedPlatformError(RuntimeError):
    """Raised on operating systems other than Linux and macOS."""


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Read-only description of the host, resolved once at startup."""

    os: str
    home: str
    username: str
    cache_dirs: tuple[str, ...] = ()
    temp_dirs: tuple[str, ...] = ()
    log_dirs: tuple[str, ...] = ()
    downloads_dir: str = ""
    system_caches: tuple[str, ...] = ()
    protected_paths: tuple[str, ...] = field(default_factory=tuple)


def detect() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "darwin"
    return "unknown"


def get_info(home: str | None = None) -> PlatformInfo:
    """Return the platform description for the running system.

    Raises:
        UnsupportedPlatformError: On anything but Linux or macOS.
    """
    home = home or str(Path.home())
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = ""
    match detect():
        case "linux":
            return _linux_info(home, username)
        case "darwin":
            return _macos_info(home, username)
        case _:
            raise UnsupportedPlatformError(f"unsupported platform: {sys.platform}")


def _linux_info(home: str, username: str) -> PlatformInfo:
    cache = str(xdg_cache_home())
    data = str(xdg_data_home())
    j = os.path.join
    return PlatformInfo(
        os="linux",
        home=home,
        username=username,
        cache_dirs=(cache, "/var/cache", "/tmp"),
        temp_dirs=("/tmp", "/var/tmp", j(data, "Trash")),
        log_dirs=("/var/log", j(data, "logs")),
        downloads_dir=j(home, "Downloads"),
        system_caches=(
            "/var/cache/apt/archives",
            "/var/cache/yum",
            "/var/cache/dnf",
            "/var/cache/pacman",
            j(cache, "google-chrome"),
            j(cache, "chromium"),
            j(cache, "mozilla/firefox"),
            j(cache, "microsoft-edge"),
            j(cache, "go-build"),
            j(cache, "pip"),
            j(cache, "yarn"),
            j(cache, "npm"),
            j(home, ".npm"),
            j(home, ".yarn/cache"),
            j(home, ".cargo/registry/cache"),
            j(home, ".gradle/caches"),
            j(cache, "thumbnails"),
            j(cache, "fontconfig"),
            j(cache, "mesa_shader_cache"),
            "/var/lib/docker/tmp",
        ),
        protected_paths=(
            "/", "/bin", "/boot", "/dev", "/etc", "/home", "/lib", "/lib64", "/opt",
            "/proc", "/root", "/run", "/sbin", "/srv", "/sys", "/usr", "/var/lib", "/var/db",
        ),
    )


def _macos_info(home: str, username: str) -> PlatformInfo:
    j = os.path.join
    return PlatformInfo(
        os="darwin",
        home=home,
        username=username,
        cache_dirs=(j(home, "Library/Caches"), "/Library/Caches", "/System/Library/Caches"),
        temp_dirs=("/tmp", "/var/tmp", "/private/tmp", "/private/var/tmp", j(home, ".Trash")),
        log_dirs=(j(home, "Library/Logs"), "/Library/Logs", "/var/log", "/private/var/log"),
        downloads_dir=j(home, "Downloads"),
        system_caches=(
            "/Library/Caches/Homebrew",
            j(home, "Library/Caches/Homebrew"),
            j(home, "Library/Caches/Google/Chrome"),
            j(home, "Library/Caches/Firefox"),
            j(home, "Library/Caches/com.apple.Safari"),
            j(home, "Library/Caches/go-build"),
            j(home, "Library/Caches/pip"),
            j(home, "Library/Caches/yarn"),
            j(home, "Library/Caches/npm"),
            j(home, ".npm"),
            j(home, ".yarn/cache"),
            j(home, "Library/Developer/Xcode/DerivedData"),
            j(home, "Library/Developer/CoreSimulator/Caches"),
            j(home, "Library/Caches/CocoaPods"),
            j(home, ".gradle/caches"),
        ),
        protected_paths=(
            "/", "/System", "/Applications", "/Library/System", "/bin", "/sbin", "/usr", "/etc",
            "/var", "/dev", "/private/etc", "/private/var/db",
            j(home, "Library/Application Support"),
            j(home, "Library/Preferences"),
            j(home, "Documents"),
            j(home, "Desktop"),
            j(home, "Pictures"),
            j(home, "Music"),
            j(home, "Movies"),
        ),
    )
