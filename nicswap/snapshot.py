# nicswap/snapshot.py
import logging

from nicswap.errors import AmbiguousMatch, InstanceNotFound, ValidationError
from nicswap.models import EbsSpec, InstanceAttribute, MigrationRecord, VolumeSpec

log = logging.getLogger(__name__)

RESERVED_TAG_PREFIX = "aws:"
TAG_NAMESPACE = "MIGRATION:"

IOPS_VOLUME_TYPES = ("io1", "io2")
THROUGHPUT_VOLUME_TYPES = ("gp3",)


def rewrite_reserved_tags(tags, reserved_prefix=RESERVED_TAG_PREFIX, namespace=TAG_NAMESPACE):
    """
    Move provider-reserved keys (``aws:...``) into the tool namespace.

    Reserved keys are rejected on create, so ``aws:cloudformation:stack-name``
    is carried over as ``MIGRATION:aws:cloudformation:stack-name``.
    """
    rewritten = []
    for tag in tags or []:
        key, value = tag["Key"], tag.get("Value", "")
        if key.lower().startswith(reserved_prefix.lower()):
            key = namespace + key
        rewritten.append((key, value))
    return tuple(rewritten)


def region_from_zone(availability_zone):
    return availability_zone[:-1] if availability_zone else None


def primary_interface(instance):
    interfaces = instance.get("NetworkInterfaces") or []
    for nic in interfaces:
        if nic.get("Attachment", {}).get("DeviceIndex") == 0:
            return nic
    return interfaces[0] if interfaces else None


def extract_placement(instance):
    raw = instance.get("Placement") or {}
    placement = {}
    if raw.get("AvailabilityZone"):
        placement["AvailabilityZone"] = raw["AvailabilityZone"]
    if raw.get("GroupId"):
        placement["GroupId"] = raw["GroupId"]
    elif raw.get("GroupName"):
        placement["GroupName"] = raw["GroupName"]
    if raw.get("PartitionNumber") is not None:
        placement["PartitionNumber"] = raw["PartitionNumber"]
    if raw.get("Tenancy"):
        placement["Tenancy"] = raw["Tenancy"]
    return placement


def extract_volumes(instance, volumes_info):
    details = {v["VolumeId"]: v for v in volumes_info}
    specs = []
    for mapping in instance.get("BlockDeviceMappings") or []:
        ebs = mapping.get("Ebs")
        ebs_spec = None
        if ebs is not None:
            volume = details.get(ebs.get("VolumeId"), {})
            volume_type = volume.get("VolumeType")
            ebs_spec = EbsSpec(
                delete_on_termination=bool(ebs.get("DeleteOnTermination", False)),
                encrypted=volume.get("Encrypted"),
                kms_key_id=volume.get("KmsKeyId"),
                volume_type=volume_type,
                iops=volume.get("Iops") if volume_type in IOPS_VOLUME_TYPES else None,
                throughput=volume.get("Throughput") if volume_type in THROUGHPUT_VOLUME_TYPES else None,
            )
        specs.append(
            VolumeSpec(
                device_name=mapping["DeviceName"],
                virtual_name=mapping.get("VirtualName") or None,
                ebs=ebs_spec,
            )
        )
    return tuple(specs)


def extract_volume_tags(volumes_info, reserved_prefix=RESERVED_TAG_PREFIX, namespace=TAG_NAMESPACE):
    volume_tags = {}
    for volume in volumes_info:
        attachments = volume.get("Attachments") or []
        if not attachments or not volume.get("Tags"):
            continue
        device = attachments[0].get("Device")
        volume_tags[device] = rewrite_reserved_tags(volume["Tags"], reserved_prefix, namespace)
    return volume_tags


class SnapshotExtractor:
    """Builds a MigrationRecord from read-only provider calls."""

    def __init__(self, gateway, reserved_tag_prefix=RESERVED_TAG_PREFIX, tag_namespace=TAG_NAMESPACE):
        self.gateway = gateway
        self.reserved_tag_prefix = reserved_tag_prefix
        self.tag_namespace = tag_namespace

    def resolve(self, private_ip):
        matches = self.gateway.find_instances_by_private_ip(private_ip)
        if not matches:
            raise InstanceNotFound(f"Instance with private IP address {private_ip} not found")
        if len(matches) > 1:
            ids = ", ".join(i.get("InstanceId", "?") for i in matches)
            raise AmbiguousMatch(f"Private IP address {private_ip} matches more than one instance: {ids}")
        return matches[0]

    def capture(self, private_ip) -> MigrationRecord:
        instance = self.resolve(private_ip)
        instance_id = instance["InstanceId"]
        log.debug("Original instance for %s: %s", private_ip, instance)

        nic = primary_interface(instance)
        if not nic or not nic.get("NetworkInterfaceId"):
            raise ValidationError(f"NIC with {private_ip} not found on instance {instance_id}")

        volume_ids = [
            m["Ebs"]["VolumeId"]
            for m in instance.get("BlockDeviceMappings") or []
            if m.get("Ebs", {}).get("VolumeId")
        ]
        volumes_info = self.gateway.describe_volumes(volume_ids)
        log.debug("volumes_info: %s", volumes_info)

        get_attr = self.gateway.get_instance_attribute
        placement = extract_placement(instance)
        record = MigrationRecord(
            instance_id=instance_id,
            private_ip=private_ip,
            subnet_id=instance.get("SubnetId"),
            region=region_from_zone(placement.get("AvailabilityZone")),
            network_interface_id=nic["NetworkInterfaceId"],
            network_attachment_id=nic.get("Attachment", {}).get("AttachmentId"),
            instance_type=instance["InstanceType"],
            key_pair=instance.get("KeyName"),
            iam_role_arn=(instance.get("IamInstanceProfile") or {}).get("Arn"),
            volumes=extract_volumes(instance, volumes_info),
            volume_tags=extract_volume_tags(volumes_info, self.reserved_tag_prefix, self.tag_namespace),
            placement=placement,
            capacity_reservation=instance.get("CapacityReservationSpecification"),
            tags=rewrite_reserved_tags(instance.get("Tags"), self.reserved_tag_prefix, self.tag_namespace),
            delete_on_termination_for_nic=bool(nic.get("Attachment", {}).get("DeleteOnTermination", False)),
            disable_api_termination=bool(get_attr(instance_id, InstanceAttribute.DISABLE_API_TERMINATION)),
            disable_api_stop=bool(get_attr(instance_id, InstanceAttribute.DISABLE_API_STOP)),
            initiated_shutdown_behavior=get_attr(instance_id, InstanceAttribute.INITIATED_SHUTDOWN_BEHAVIOR) or "stop",
        )
        log.debug("Captured %s", record)
        return record
