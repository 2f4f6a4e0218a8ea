# nicswap/models.py
from dataclasses import dataclass, field, replace
from enum import Enum


class Role(Enum):
    WINDOWS = "windows"
    LINUX = "linux"

    @property
    def other(self):
        return Role.LINUX if self is Role.WINDOWS else Role.WINDOWS

    @property
    def label(self):
        return self.value.capitalize()


class Phase(Enum):
    INIT = "Init"
    VALIDATED = "Validated"
    PROTECTION_ADJUSTED = "ProtectionAdjusted"
    STOPPED = "Stopped"
    BACKED_UP = "BackedUp"
    TERMINATED = "Terminated"
    RECREATED = "Recreated"
    RESTORED = "Restored"
    DEDUPLICATED = "Deduplicated"
    DONE = "Done"
    FAILED = "Failed"
    NEEDS_MANUAL_RECREATE = "NeedsManualRecreate"

    @property
    def rank(self):
        return PIPELINE.index(self) if self in PIPELINE else -1

    @property
    def committed(self):
        return self.rank >= PIPELINE.index(Phase.BACKED_UP)


# Forward order; FAILED and NEEDS_MANUAL_RECREATE are terminal side exits.
PIPELINE = [
    Phase.INIT,
    Phase.VALIDATED,
    Phase.PROTECTION_ADJUSTED,
    Phase.STOPPED,
    Phase.BACKED_UP,
    Phase.TERMINATED,
    Phase.RECREATED,
    Phase.RESTORED,
    Phase.DEDUPLICATED,
    Phase.DONE,
]


class InstanceAttribute(Enum):
    DISABLE_API_TERMINATION = "disableApiTermination"
    DISABLE_API_STOP = "disableApiStop"
    INITIATED_SHUTDOWN_BEHAVIOR = "instanceInitiatedShutdownBehavior"


class PowerState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class EbsSpec:
    delete_on_termination: bool = False
    encrypted: bool | None = None
    kms_key_id: str | None = None
    volume_type: str | None = None
    iops: int | None = None
    throughput: int | None = None

    def to_api(self):
        ebs = {"DeleteOnTermination": self.delete_on_termination}
        if self.encrypted is not None:
            ebs["Encrypted"] = self.encrypted
        if self.kms_key_id:
            ebs["KmsKeyId"] = self.kms_key_id
        if self.volume_type:
            ebs["VolumeType"] = self.volume_type
        if self.iops is not None:
            ebs["Iops"] = self.iops
        if self.throughput is not None:
            ebs["Throughput"] = self.throughput
        return ebs


@dataclass(frozen=True)
class VolumeSpec:
    device_name: str
    virtual_name: str | None = None
    ebs: EbsSpec | None = None

    def to_block_device_mapping(self):
        mapping = {"DeviceName": self.device_name}
        if self.virtual_name:
            mapping["VirtualName"] = self.virtual_name
            return mapping
        mapping["Ebs"] = (self.ebs or EbsSpec()).to_api()
        return mapping


@dataclass(frozen=True)
class MigrationRecord:
    """
    Captured configuration of one role-VM.

    Immutable; the pipeline enriches it with ``dataclasses.replace`` once the
    backup image and the replacement instance exist.
    """

    instance_id: str
    private_ip: str
    subnet_id: str
    region: str
    network_interface_id: str
    network_attachment_id: str
    instance_type: str
    key_pair: str | None = None
    iam_role_arn: str | None = None
    volumes: tuple = ()
    volume_tags: dict = field(default_factory=dict)
    placement: dict = field(default_factory=dict)
    capacity_reservation: dict | None = None
    tags: tuple = ()
    delete_on_termination_for_nic: bool = False
    disable_api_termination: bool = False
    disable_api_stop: bool = False
    initiated_shutdown_behavior: str = "stop"
    backup_image_id: str | None = None
    new_instance_id: str | None = None

    def with_backup_image(self, image_id):
        return replace(self, backup_image_id=image_id)

    def with_new_instance(self, instance_id):
        return replace(self, new_instance_id=instance_id)


@dataclass(frozen=True)
class MigrationState:
    windows: MigrationRecord
    linux: MigrationRecord
    phase: Phase = Phase.INIT

    def record(self, role: Role) -> MigrationRecord:
        return self.windows if role is Role.WINDOWS else self.linux

    def with_record(self, role: Role, record: MigrationRecord):
        if role is Role.WINDOWS:
            return replace(self, windows=record)
        return replace(self, linux=record)

    def advance(self, phase: Phase):
        return replace(self, phase=phase)
