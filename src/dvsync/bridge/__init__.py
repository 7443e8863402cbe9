"""Command Bridge - running commands and copying files against a container."""

from dvsync.bridge.base import CommandBridge, RemoteProcess
from dvsync.bridge.docker import DockerBridge
from dvsync.bridge.process import CommandResult, run_command

__all__ = [
    "CommandBridge",
    "CommandResult",
    "DockerBridge",
    "RemoteProcess",
    "run_command",
]
