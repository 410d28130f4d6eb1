"""CMake configure, build, and install steps."""

from .cmake import (
    ConfiguredProject,
    adopt_build_directory,
    build_arguments,
    build_project,
    cmake_define,
    cmake_executable,
    configure_arguments,
    configure_project,
)
from .install import install_arguments, install_project, scan_prefix

__all__ = [
    "ConfiguredProject",
    "adopt_build_directory",
    "build_arguments",
    "build_project",
    "cmake_define",
    "cmake_executable",
    "configure_arguments",
    "configure_project",
    "install_arguments",
    "install_project",
    "scan_prefix",
]
