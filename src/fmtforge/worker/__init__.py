"""Worker bridges: content-addressed environments, subprocess servers and embedded runtimes."""

from __future__ import annotations

from fmtforge.worker.embedded import EmbeddedBridge, embedded_step
from fmtforge.worker.environment import (
    EnvironmentProvisioner,
    PipInstaller,
    WorkerEnvironment,
    manifest_hash,
)
from fmtforge.worker.protocol import FormatRequest, FormatResponse
from fmtforge.worker.server import ServerWorker, server_step

__all__ = [
    "EmbeddedBridge",
    "EnvironmentProvisioner",
    "FormatRequest",
    "FormatResponse",
    "PipInstaller",
    "ServerWorker",
    "WorkerEnvironment",
    "embedded_step",
    "manifest_hash",
    "server_step",
]
