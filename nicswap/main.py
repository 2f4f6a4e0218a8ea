# nicswap/main.py
import argparse
import ipaddress
import logging
import logging.config
import logging.handlers
import os
import queue
import sys
import yaml

from nicswap.config_loader import load_runtime_config
from nicswap.errors import MigrationError, PostCommitFailure, ReversibleStepFailure, StepFailure
from nicswap.gateway import AwsResourceGateway
from nicswap.orchestrator import MigrationOrchestrator
from nicswap.snapshot import SnapshotExtractor
from nicswap.utils import timestamp
from storage.checkpoint_store import CheckpointStore

log = logging.getLogger("nicswap.main")

LOGGING_CONFIG_PATH = "config/logging.yaml"
FILE_FORMAT = "%(asctime)s, %(levelname)s, %(name)s, %(message)s"
DATE_FORMAT = "%Y%m%d%H%M%S"


def file_formatter(cfg):
    """Formatter for the log file, taken from the ``file`` entry of the logging YAML."""
    entry = ((cfg or {}).get("formatters") or {}).get("file") or {}
    return logging.Formatter(entry.get("format", FILE_FORMAT), datefmt=entry.get("datefmt", DATE_FORMAT))


def load_logging_config(path=LOGGING_CONFIG_PATH, log_file=None, verbose=False):
    """
    Configure console logging from YAML and tee everything to ``log_file``.

    Console and file handlers are moved behind a QueueHandler so a slow
    handler never blocks the migration thread. Returns the QueueListener;
    the caller stops it on exit to flush pending records.
    """
    cfg = {}
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f) or {}
        logging.config.dictConfig(cfg)
    except (OSError, yaml.YAMLError, ValueError):
        cfg = {}
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s, %(message)s",
            datefmt=DATE_FORMAT,
            force=True,
        )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    handlers = list(root.handlers)
    for handler in handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter(cfg))
        handlers.append(file_handler)

    records = queue.Queue(-1)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(logging.handlers.QueueHandler(records))
    listener = logging.handlers.QueueListener(records, *handlers, respect_handler_level=True)
    listener.start()
    return listener


def ipv4(value):
    try:
        return str(ipaddress.IPv4Address(value))
    except ipaddress.AddressValueError:
        raise argparse.ArgumentTypeError(f"Invalid IP address format: {value}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="nic-reassign",
        description="Swap the network interfaces (private IPs) of a Windows and a Linux EC2 instance.",
    )
    parser.add_argument("--windows-ip", required=True, type=ipv4, help="Private IPv4 of the Windows VM")
    parser.add_argument("--linux-ip", required=True, type=ipv4, help="Private IPv4 of the Linux VM")
    parser.add_argument("--verbose", action="store_true", help="Show debug messages on the console")
    parser.add_argument(
        "--resume",
        "--recreate",
        dest="resume",
        metavar="CHECKPOINT_FILE",
        help="Resume a migration that failed after the original instances were terminated",
    )
    parser.add_argument("--config", default=None, help="Runtime config path (default config/runtime.yaml)")
    parser.add_argument("--region", default=None, help="AWS region; defaults to runtime config / environment")
    parser.add_argument("--profile", default=None, help="Optional AWS CLI profile")
    return parser


def resume_command(args, checkpoint_path):
    return f"nic-reassign --windows-ip {args.windows_ip} --linux-ip {args.linux_ip} --resume {checkpoint_path}"


def report_failure(err, args):
    if isinstance(err, ReversibleStepFailure):
        log.error("Windows and Linux NICs were not switched: %s", err.cause)
        if err.timed_out:
            log.error("The operation timed out; it may still be in progress on the provider side.")
        if err.unwind.ok:
            log.warning("Monitor the messages above to track failed steps, resolve issues and re-run.")
        else:
            log.error("Rollback was not executed properly. The instances are in an inconsistent state.")
            log.warning("Rollback steps that require manual execution:")
            for number, step in enumerate(err.unwind.manual_steps, start=1):
                log.warning("- step #%d: %s", number, step)
    elif isinstance(err, PostCommitFailure):
        log.error("Instances were terminated. Not executing a rollback: %s", err.cause)
        if err.timed_out:
            log.error("The operation timed out; resuming keeps polling where it stopped.")
        log.warning("Resolve issues and execute again with the following command:")
        log.warning("%s", resume_command(args, err.checkpoint_path))
    else:
        log.error("%s", err)
    if isinstance(err, StepFailure):
        log.error(
            "Migration state: %s (last completed phase: %s)",
            err.terminal_state.phase.value,
            err.state.phase.value,
        )


def main(argv=None, gateway=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.windows_ip == args.linux_ip:
        parser.error("Each VM IP address input must be unique")

    try:
        cfg = load_runtime_config(args.config)
        output_dir = cfg["output_dir"]
        os.makedirs(output_dir, exist_ok=True)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: cannot load runtime configuration: {e}", file=sys.stderr)
        return 1

    started = timestamp()
    log_file = os.path.join(output_dir, f"nic-reassign-{started}.log")
    listener = load_logging_config(log_file=log_file, verbose=args.verbose)

    try:
        if args.resume:
            checkpoint = CheckpointStore(args.resume)
            if not checkpoint.exists():
                log.error("Checkpoint file %s does not exist.", args.resume)
                return 1
        else:
            checkpoint = CheckpointStore(os.path.join(output_dir, f"recreation-params-{started}.txt"))
        log.info("Log file: %s", log_file)

        try:
            if gateway is None:
                gateway = AwsResourceGateway(
                    region=args.region or cfg["region"],
                    profile=args.profile or cfg["profile"],
                    poll_interval=cfg["poll_interval"],
                )
            orchestrator = MigrationOrchestrator(
                gateway,
                checkpoint,
                timeouts=cfg["timeouts"],
                extractor=SnapshotExtractor(gateway, cfg["reserved_tag_prefix"], cfg["tag_namespace"]),
                cleanup_commands=cfg["cleanup_commands"],
                probe_command=cfg["probe_command"],
                restart_grace=cfg["restart_grace"],
                poll_interval=cfg["poll_interval"],
            )
            if args.resume:
                orchestrator.resume(args.windows_ip, args.linux_ip)
            else:
                orchestrator.run(args.windows_ip, args.linux_ip)
        except MigrationError as e:
            report_failure(e, args)
            return 1

        log.info("Execution finished")
        return 0
    finally:
        listener.stop()


if __name__ == "__main__":
    sys.exit(main())
