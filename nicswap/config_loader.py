# nicswap/config_loader.py
import os
import yaml
from dataclasses import dataclass, fields
from pathlib import Path

from nicswap.snapshot import RESERVED_TAG_PREFIX, TAG_NAMESPACE

RUNTIME_CONFIG_PATH = Path("config/runtime.yaml")

# Removes the cluster nodes registered under the old IP and restarts the
# local cluster agent; the node list should end up with a single entry.
DEFAULT_CLEANUP_COMMANDS = [
    "#!/bin/bash",
    "set -e",
    "microk8s.kubectl delete nodes --all",
    "microk8s.kubectl delete pods --all",
    "microk8s stop",
    "microk8s start",
    "microk8s.kubectl get nodes",
    "node_count=$(microk8s.kubectl get nodes --no-headers | wc -l)",
    "if [ $node_count -eq 1 ]; then",
    ' echo "Nodes were deleted and there is only one Kubernetes node."',
    "else",
    ' echo "Error: Nodes were not deleted properly or there are more than one Kubernetes nodes."',
    " exit 1",
    "fi",
]
DEFAULT_PROBE_COMMAND = "microk8s.kubectl cluster-info"


@dataclass(frozen=True)
class Timeouts:
    """Bounds (seconds) for every blocking wait in the migration."""

    stop: int = 300
    image: int = 1800
    terminate: int = 300
    running: int = 1200
    agent_ready: int = 600
    remote_command: int = 240
    agent_responding: int = 120

    @classmethod
    def from_mapping(cls, data):
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown timeout keys: {', '.join(sorted(unknown))}")
        return cls(**{k: int(v) for k, v in data.items()})


def load_runtime_config(path=None):
    """
    Loads runtime configuration for the migration.
    Priority:
      1) Environment variables
      2) config/runtime.yaml (or NIC_REASSIGN_CONFIG / explicit path), if present
    Command line flags are applied on top by the caller.
    """
    cfg = {}

    config_path = Path(path or os.getenv("NIC_REASSIGN_CONFIG") or RUNTIME_CONFIG_PATH)
    if config_path.exists():
        with open(config_path) as f:
            cfg = yaml.safe_load(f) or {}

    region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or cfg.get("region")
    profile = os.getenv("AWS_PROFILE") or cfg.get("profile")
    output_dir = os.getenv("NIC_REASSIGN_OUTPUT_DIR") or cfg.get("output_dir") or "."
    poll_interval = os.getenv("NIC_REASSIGN_POLL_INTERVAL") or cfg.get("poll_interval") or 5
    restart_grace = cfg.get("restart_grace")
    if restart_grace is None:
        restart_grace = 120

    return {
        "region": region,
        "profile": profile,
        "output_dir": output_dir,
        "poll_interval": float(poll_interval),
        "restart_grace": float(restart_grace),
        "timeouts": Timeouts.from_mapping(cfg.get("timeouts")),
        "reserved_tag_prefix": cfg.get("reserved_tag_prefix") or RESERVED_TAG_PREFIX,
        "tag_namespace": cfg.get("tag_namespace") or TAG_NAMESPACE,
        "cleanup_commands": cfg.get("cleanup_commands") or list(DEFAULT_CLEANUP_COMMANDS),
        "probe_command": cfg.get("probe_command") or DEFAULT_PROBE_COMMAND,
        "raw": cfg,
    }
