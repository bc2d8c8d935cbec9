"""
Filesystem locations used by the engine.

Provides:
- OpenSSH directory, config and known_hosts paths (for profile and trust import)
- The per-user data directory holding the trust store and event logs
- Path expansion for ~ and %VAR% syntax
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "sshtab"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate OpenSSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def get_known_hosts_path() -> Path:
    """Path of the user's OpenSSH known_hosts file."""
    return get_ssh_dir() / "known_hosts"


def get_config_path() -> Path:
    """Path of the user's OpenSSH client config."""
    return get_ssh_dir() / "config"


def get_data_dir() -> Path:
    """
    Get the directory holding engine state.

    Honours $XDG_DATA_HOME on Unix and %APPDATA% on Windows.
    """
    if is_windows():
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_DIR_NAME
        return Path.home() / "AppData" / "Roaming" / APP_DIR_NAME

    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def get_trust_store_path() -> Path:
    """Default location of the JSON trust store."""
    return get_data_dir() / "trusted_hosts.json"


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Windows %VAR% syntax is expanded as well.
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()
