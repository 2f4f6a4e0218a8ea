import argparse
import sys
from pathlib import Path

# Allow running as `python scripts/show_checkpoint.py` from a source checkout
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nicswap.errors import CheckpointError
from nicswap.models import Role
from storage.checkpoint_store import CheckpointStore


def describe(state):
    lines = [f"phase: {state.phase.value}"]
    for role in Role:
        rec = state.record(role)
        lines.append(f"{role.label}:")
        lines.append(f"  private ip:        {rec.private_ip}")
        lines.append(f"  original instance: {rec.instance_id}")
        lines.append(f"  nic:               {rec.network_interface_id}")
        lines.append(f"  backup image:      {rec.backup_image_id or '-'}")
        lines.append(f"  new instance:      {rec.new_instance_id or '-'}")
    return "\n".join(lines)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Show the state recorded in a nic-reassign checkpoint file.")
    parser.add_argument("checkpoint", help="Path to recreation-params-*.txt")
    args = parser.parse_args(argv)

    store = CheckpointStore(args.checkpoint)
    try:
        state = store.load()
    except CheckpointError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if state is None:
        print(f"Error: {args.checkpoint} does not exist", file=sys.stderr)
        return 1
    print(describe(state))
    return 0


if __name__ == "__main__":
    sys.exit(main())
