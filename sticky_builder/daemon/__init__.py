"""buildkitd configuration and supervision."""

from sticky_builder.daemon.config import build_daemon_config, write_daemon_config
from sticky_builder.daemon.supervisor import DEFAULT_ADDRESS, DaemonSupervisor

__all__ = [
    "DEFAULT_ADDRESS",
    "DaemonSupervisor",
    "build_daemon_config",
    "write_daemon_config",
]
