# storage/checkpoint_store.py
import json
import os
from dataclasses import asdict
from threading import Lock

from nicswap.errors import CheckpointError
from nicswap.models import EbsSpec, MigrationRecord, MigrationState, Phase, Role, VolumeSpec

PHASE_KEY = "phase"


def _encode_str(value):
    return "" if value is None else str(value)


def _decode_str(raw):
    return raw or None


def _encode_bool(value):
    return "true" if value else "false"


def _decode_bool(raw):
    if raw not in ("true", "false"):
        raise ValueError(f"expected true/false, got {raw!r}")
    return raw == "true"


def _encode_json(value):
    return "" if value is None else json.dumps(value, separators=(",", ":"), sort_keys=True)


def _decode_json(raw):
    return json.loads(raw) if raw else None


def _encode_volumes(volumes):
    return _encode_json([asdict(v) for v in volumes])


def _decode_volumes(raw):
    volumes = []
    for item in _decode_json(raw) or []:
        ebs = item.get("ebs")
        volumes.append(
            VolumeSpec(
                device_name=item["device_name"],
                virtual_name=item.get("virtual_name"),
                ebs=EbsSpec(**ebs) if ebs else None,
            )
        )
    return tuple(volumes)


def _encode_tags(tags):
    return _encode_json([[k, v] for k, v in tags])


def _decode_tags(raw):
    return tuple((k, v) for k, v in _decode_json(raw) or [])


def _encode_volume_tags(volume_tags):
    return _encode_json({device: [[k, v] for k, v in tags] for device, tags in volume_tags.items()})


def _decode_volume_tags(raw):
    return {device: tuple((k, v) for k, v in tags) for device, tags in (_decode_json(raw) or {}).items()}


# (line key, record attribute, encoder, decoder, value required)
FIELDS = [
    ("instance_id", "instance_id", _encode_str, _decode_str, True),
    ("private_ip", "private_ip", _encode_str, _decode_str, True),
    ("subnet_id", "subnet_id", _encode_str, _decode_str, False),
    ("region", "region", _encode_str, _decode_str, False),
    ("nic_id", "network_interface_id", _encode_str, _decode_str, True),
    ("nic_attachment_id", "network_attachment_id", _encode_str, _decode_str, False),
    ("instance_type", "instance_type", _encode_str, _decode_str, True),
    ("key_pair", "key_pair", _encode_str, _decode_str, False),
    ("iam_role_arn", "iam_role_arn", _encode_str, _decode_str, False),
    ("volumes", "volumes", _encode_volumes, _decode_volumes, False),
    ("volume_tags", "volume_tags", _encode_volume_tags, _decode_volume_tags, False),
    ("placement", "placement", _encode_json, lambda raw: _decode_json(raw) or {}, False),
    ("capacity_reservation", "capacity_reservation", _encode_json, _decode_json, False),
    ("tags", "tags", _encode_tags, _decode_tags, False),
    ("delete_on_termination_for_nic", "delete_on_termination_for_nic", _encode_bool, _decode_bool, True),
    ("disable_api_termination", "disable_api_termination", _encode_bool, _decode_bool, True),
    ("disable_api_stop", "disable_api_stop", _encode_bool, _decode_bool, True),
    ("initiated_shutdown_behavior", "initiated_shutdown_behavior", _encode_str, _decode_str, True),
    ("ami_image_id", "backup_image_id", _encode_str, _decode_str, True),
]

# Appended once the replacement instance exists; absent until then.
NEW_INSTANCE_FIELD = "new_instance_id"


def field_key(role: Role, name: str):
    return f"{role.value}_{name}"


class CheckpointStore:
    """
    Recreation parameters of a migration, kept as ``key:value`` lines.

    The full state is written once at the commit point. Afterwards only
    ``phase`` and ``<role>_new_instance_id`` lines are appended; on load
    the last occurrence of a key wins.
    """

    def __init__(self, path):
        self.path = str(path)
        self.lock = Lock()

    def exists(self):
        return os.path.isfile(self.path)

    def _write(self, mode, lines):
        with open(self.path, mode) as f:
            for line in lines:
                f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def save(self, state: MigrationState):
        lines = []
        for role in Role:
            record = state.record(role)
            for key, attr, encode, _, _ in FIELDS:
                lines.append(f"{field_key(role, key)}:{encode(getattr(record, attr))}")
            if record.new_instance_id:
                lines.append(f"{field_key(role, NEW_INSTANCE_FIELD)}:{record.new_instance_id}")
        lines.append(f"{PHASE_KEY}:{state.phase.value}")
        with self.lock:
            try:
                self._write("w", lines)
            except OSError as e:
                raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}") from e

    def append_field(self, key, value):
        with self.lock:
            try:
                self._write("a", [f"{key}:{_encode_str(value)}"])
            except OSError as e:
                raise CheckpointError(f"Failed to append {key} to checkpoint {self.path}: {e}") from e

    def append_phase(self, phase: Phase):
        self.append_field(PHASE_KEY, phase.value)

    def append_new_instance(self, role: Role, instance_id):
        self.append_field(field_key(role, NEW_INSTANCE_FIELD), instance_id)

    def _read_pairs(self):
        pairs = {}
        with open(self.path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                if ":" not in line:
                    raise CheckpointError(f"{self.path}:{lineno}: expected key:value, got {line!r}")
                key, value = line.split(":", 1)
                pairs[key.strip()] = value.strip()
        return pairs

    def load(self) -> MigrationState | None:
        if not self.exists():
            return None
        with self.lock:
            try:
                pairs = self._read_pairs()
            except OSError as e:
                raise CheckpointError(f"Failed to read checkpoint {self.path}: {e}") from e

        records = {role: self._parse_record(role, pairs) for role in Role}

        if PHASE_KEY not in pairs:
            raise CheckpointError(f"Checkpoint {self.path} has no {PHASE_KEY} entry")
        try:
            phase = Phase(pairs[PHASE_KEY])
        except ValueError:
            raise CheckpointError(f"Checkpoint {self.path} has unknown phase {pairs[PHASE_KEY]!r}")

        return MigrationState(windows=records[Role.WINDOWS], linux=records[Role.LINUX], phase=phase)

    def _parse_record(self, role, pairs):
        values = {}
        for key, attr, _, decode, required in FIELDS:
            name = field_key(role, key)
            if name not in pairs:
                raise CheckpointError(f"Checkpoint {self.path} is missing {name}")
            raw = pairs[name]
            if required and not raw:
                raise CheckpointError(f"Checkpoint {self.path} has an empty value for {name}")
            try:
                values[attr] = decode(raw)
            except (ValueError, TypeError, KeyError) as e:
                raise CheckpointError(f"Checkpoint {self.path} has an invalid value for {name}: {e}")
        values["new_instance_id"] = _decode_str(pairs.get(field_key(role, NEW_INSTANCE_FIELD)))
        return MigrationRecord(**values)
