"""Sandbox provisioning module for Docker-based code execution.

This module provides the SandboxProvisioner for creating and resolving
isolated Docker containers where the coding agent executes commands and
edits files, and the SandboxHandle that wraps one such container.
"""

from sandbox.docker_sandbox import (
    CommandExitError,
    CommandResult,
    CommandTimeoutError,
    SandboxError,
    SandboxHandle,
    SandboxProvisioner,
    SandboxProvisionError,
    SandboxUnavailableError,
)
from sandbox.security import validate_command, validate_path

__all__ = [
    "CommandExitError",
    "CommandResult",
    "CommandTimeoutError",
    "SandboxError",
    "SandboxHandle",
    "SandboxProvisioner",
    "SandboxProvisionError",
    "SandboxUnavailableError",
    "validate_command",
    "validate_path",
]
