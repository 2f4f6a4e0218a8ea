# nicswap/orchestrator.py
import logging
import time
from functools import partial

from nicswap.config_loader import DEFAULT_CLEANUP_COMMANDS, DEFAULT_PROBE_COMMAND, Timeouts
from nicswap.errors import (
    CheckpointError,
    GatewayError,
    OperationFailed,
    PostCommitFailure,
    ReversibleStepFailure,
    ValidationError,
)
from nicswap.gateway import AGENT_ONLINE, COMMAND_SUCCESS
from nicswap.models import InstanceAttribute, MigrationState, Phase, PowerState, Role
from nicswap.rollback import RollbackStack
from nicswap.snapshot import SnapshotExtractor, primary_interface
from nicswap.utils import DEFAULT_POLL_INTERVAL, poll_until, timestamp
from storage.checkpoint_store import CheckpointStore

log = logging.getLogger(__name__)

# Teardown order; recreation runs Windows first.
CAPTURE_ORDER = (Role.LINUX, Role.WINDOWS)
RECREATE_ORDER = (Role.WINDOWS, Role.LINUX)
GONE_STATES = (None, "shutting-down", "terminated")


class MigrationOrchestrator:
    """
    Swaps the primary network interfaces of a Windows and a Linux instance.

    The forward pipeline is a list of phase transitions. Every transition
    takes the current MigrationState and returns the next one. Transitions
    before the commit point (BackedUp) register compensations on the
    rollback stack; from the commit point on, progress is appended to the
    checkpoint file and a failure leaves the migration resumable.
    """

    def __init__(
        self,
        gateway,
        checkpoint: CheckpointStore,
        timeouts: Timeouts | None = None,
        extractor: SnapshotExtractor | None = None,
        cleanup_commands=None,
        probe_command=DEFAULT_PROBE_COMMAND,
        restart_grace: float = 120,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.gateway = gateway
        self.checkpoint = checkpoint
        self.timeouts = timeouts or Timeouts()
        self.extractor = extractor or SnapshotExtractor(gateway)
        self.cleanup_commands = list(cleanup_commands or DEFAULT_CLEANUP_COMMANDS)
        self.probe_command = probe_command
        self.restart_grace = restart_grace
        self.poll_interval = poll_interval
        self.rollback = RollbackStack()
        self._sleep = sleep
        self._clock = clock

    # entry points

    def run(self, windows_ip, linux_ip) -> MigrationState:
        log.info("1. Initialization...")
        state = self.validate(windows_ip, linux_ip)
        return self._drive(state)

    def resume(self, windows_ip=None, linux_ip=None) -> MigrationState:
        log.info("Starting instances recreation.")
        log.info("Reading recreation info from file %s", self.checkpoint.path)
        state = self.checkpoint.load()
        if state is None:
            raise CheckpointError(f"Checkpoint file {self.checkpoint.path} does not exist")
        if not state.phase.committed:
            raise CheckpointError(
                f"Checkpoint {self.checkpoint.path} is at phase {state.phase.value}; "
                f"only migrations past {Phase.BACKED_UP.value} can be resumed"
            )
        for role, ip in ((Role.WINDOWS, windows_ip), (Role.LINUX, linux_ip)):
            recorded = state.record(role).private_ip
            if ip and ip != recorded:
                raise CheckpointError(
                    f"Checkpoint {self.checkpoint.path} was written for {role.label} IP {recorded}, not {ip}"
                )
        log.info("Resuming after phase %s", state.phase.value)
        return self._drive(state)

    # pipeline

    def _transitions(self):
        return [
            (Phase.PROTECTION_ADJUSTED, self.adjust_protection),
            (Phase.STOPPED, self.stop_instances),
            (Phase.BACKED_UP, self.back_up),
            (Phase.TERMINATED, self.terminate),
            (Phase.RECREATED, self.recreate),
            (Phase.RESTORED, self.restore),
            (Phase.DEDUPLICATED, self.deduplicate),
            (Phase.DONE, self.finish),
        ]

    def _drive(self, state: MigrationState) -> MigrationState:
        for target, step in self._transitions():
            if state.phase.rank >= target.rank:
                log.debug("Skipping %s, already completed", target.value)
                continue
            try:
                next_state = step(state).advance(target)
                self._persist(next_state)
            except Exception as e:
                if target.committed and target is not Phase.BACKED_UP:
                    raise PostCommitFailure(state, self.checkpoint.path, e) from e
                raise ReversibleStepFailure(state, self.rollback.unwind_all(), e) from e
            state = next_state
            log.debug("Phase %s reached", target.value)
        return state

    def _persist(self, state):
        if state.phase is Phase.BACKED_UP:
            log.info("Writing recreation info to file %s", self.checkpoint.path)
            self.checkpoint.save(state)
        elif state.phase.committed:
            self.checkpoint.append_phase(state.phase)

    # Init -> Validated

    def validate(self, windows_ip, linux_ip) -> MigrationState:
        records = {role: self.extractor.capture(ip) for role, ip in ((Role.LINUX, linux_ip), (Role.WINDOWS, windows_ip))}
        linux, windows = records[Role.LINUX], records[Role.WINDOWS]

        if linux.instance_id == windows.instance_id:
            raise ValidationError(
                f"{windows_ip} and {linux_ip} belong to the same instance {linux.instance_id}"
            )

        log.debug("Windows region name: %s", windows.region)
        log.debug("Linux region name: %s", linux.region)
        if windows.region != linux.region:
            raise ValidationError(
                "The Linux VM and the Windows VM are not located in the same region. "
                "Both VMs must be located in the same region."
            )

        log.debug("Windows subnet ID: %s", windows.subnet_id)
        log.debug("Linux subnet ID: %s", linux.subnet_id)
        if windows.subnet_id != linux.subnet_id:
            raise ValidationError(
                "The Linux VM and the Windows VM are not located in the same subnet. "
                "Both VMs must be located in the same subnet."
            )

        status = self.gateway.remote_agent_status(linux.instance_id)
        if status is None:
            raise ValidationError(
                f"Remote command agent is not installed on instance {linux.instance_id}. "
                "Cannot remove duplicated cluster nodes."
            )
        if status != AGENT_ONLINE:
            raise ValidationError(
                f"Remote command agent is not running on the Linux instance {linux.instance_id} "
                f"(status {status}). The VM may be shut down, or the caller may lack permissions."
            )
        log.debug("Remote command agent is installed and running on instance %s.", linux.instance_id)

        return MigrationState(windows=windows, linux=linux, phase=Phase.VALIDATED)

    # Validated -> ProtectionAdjusted

    def adjust_protection(self, state):
        log.info("2. Releasing termination protection")
        for role in CAPTURE_ORDER:
            rec = state.record(role)
            if self._set_nic_delete_on_termination(
                role, rec.network_interface_id, rec.network_attachment_id, False, rec.delete_on_termination_for_nic
            ):
                self.rollback.push(
                    f"Set delete-on-termination for NIC {rec.network_interface_id} to its original value",
                    partial(
                        self._set_nic_delete_on_termination,
                        role,
                        rec.network_interface_id,
                        rec.network_attachment_id,
                        rec.delete_on_termination_for_nic,
                        False,
                    ),
                )
            for attribute, original in (
                (InstanceAttribute.DISABLE_API_TERMINATION, rec.disable_api_termination),
                (InstanceAttribute.DISABLE_API_STOP, rec.disable_api_stop),
            ):
                if self._set_attribute(role, rec.instance_id, attribute, False, original):
                    self.rollback.push(
                        f"Set {attribute.value} for instance {rec.instance_id} to its original value",
                        partial(self._set_attribute, role, rec.instance_id, attribute, original, False),
                    )
        return state

    # ProtectionAdjusted -> Stopped

    def stop_instances(self, state):
        log.info("3. Powering off instances")
        for role in CAPTURE_ORDER:
            instance_id = state.record(role).instance_id
            self.gateway.stop_instance(instance_id)
            self.rollback.push(f"Start {role.label} instance {instance_id}", partial(self._restart, role, instance_id))
        for role in CAPTURE_ORDER:
            instance_id = state.record(role).instance_id
            self.gateway.await_power_state(instance_id, PowerState.STOPPED, self.timeouts.stop)
            log.info("%s VM %s has been stopped successfully.", role.label, instance_id)
        return state

    def _restart(self, role, instance_id):
        # Let a half-finished stop settle first.
        self._sleep(self.restart_grace)
        self.gateway.start_instance(instance_id)
        self.gateway.await_running(instance_id, self.timeouts.running)
        log.info("%s VM %s is running again.", role.label, instance_id)

    # Stopped -> BackedUp

    def back_up(self, state):
        log.info("4. Creating backup images")
        ts = timestamp()
        marker = f"WINDOWS-IP-{state.windows.private_ip}, LINUX-IP-{state.linux.private_ip}"
        for role in CAPTURE_ORDER:
            rec = state.record(role)
            log.info("Creating AMI from %s instance %s", role.label, rec.instance_id)
            image_id = self.gateway.create_backup_image(
                rec.instance_id,
                name=f"{role.label}ForMigrationAmi-{ts}",
                description=f"AMI created from {rec.instance_id} for NIC reassignment ({marker})",
                tags=[("NIC_REASSIGN_BACKUP", marker)],
            )
            log.info("%s AMI %s requested", role.label, image_id)
            state = state.with_record(role, rec.with_backup_image(image_id))
        for role in CAPTURE_ORDER:
            image_id = state.record(role).backup_image_id
            self.gateway.await_image_ready(image_id, self.timeouts.image)
            log.info("%s VM AMI ID: %s creation completed successfully.", role.label, image_id)
        return state

    # BackedUp -> Terminated

    def terminate(self, state):
        log.info("5. Terminating original instances to release their NICs")
        for role in CAPTURE_ORDER:
            instance_id = state.record(role).instance_id
            current = self.gateway.describe_instance(instance_id)
            current_state = current["State"]["Name"] if current else None
            if current_state in GONE_STATES:
                log.info("%s instance %s is already %s, not terminating again", role.label, instance_id, current_state or "gone")
                continue
            log.info("Terminating %s instance %s", role.label, instance_id)
            self.gateway.terminate_instance(instance_id)
        for role in CAPTURE_ORDER:
            instance_id = state.record(role).instance_id
            self.gateway.await_terminated(instance_id, self.timeouts.terminate)
            log.info("%s VM %s has been terminated successfully.", role.label, instance_id)
        return state

    # Terminated -> Recreated

    def recreate(self, state):
        log.info("6. Recreating instances with swapped NICs")
        for role in RECREATE_ORDER:
            rec = state.record(role)
            if rec.new_instance_id:
                log.info(
                    "Skipping %s instance creation, already created in a previous run: %s",
                    role.label,
                    rec.new_instance_id,
                )
                continue
            other = state.record(role.other)
            log.info(
                "Creating %s instance with the NIC that was attached to the %s instance %s.",
                role.label,
                role.other.label,
                other.network_interface_id,
            )
            new_id = self.gateway.create_instance_from_image(rec.backup_image_id, other.network_interface_id, rec)
            log.info("%s instance %s created from %s", role.label, new_id, rec.backup_image_id)
            self.checkpoint.append_new_instance(role, new_id)
            state = state.with_record(role, rec.with_new_instance(new_id))
        for role in RECREATE_ORDER:
            new_id = state.record(role).new_instance_id
            self.gateway.await_running(new_id, self.timeouts.running)
            log.info("%s VM %s has been recreated successfully.", role.label, new_id)
        return state

    # Recreated -> Restored

    def restore(self, state):
        log.info("7. Restoring instance and volume properties")
        for role in CAPTURE_ORDER:
            rec = state.record(role)
            other = state.record(role.other)
            instance = self.gateway.describe_instance(rec.new_instance_id)
            if instance is None:
                raise OperationFailed(f"New {role.label} instance {rec.new_instance_id} not found")

            # The NIC carries its own delete-on-termination value across the swap.
            attachment = (primary_interface(instance) or {}).get("Attachment", {})
            self._set_nic_delete_on_termination(
                role,
                other.network_interface_id,
                attachment.get("AttachmentId"),
                other.delete_on_termination_for_nic,
                bool(attachment.get("DeleteOnTermination", False)),
            )

            for attribute, original in (
                (InstanceAttribute.DISABLE_API_TERMINATION, rec.disable_api_termination),
                (InstanceAttribute.DISABLE_API_STOP, rec.disable_api_stop),
                (InstanceAttribute.INITIATED_SHUTDOWN_BEHAVIOR, rec.initiated_shutdown_behavior),
            ):
                current = self.gateway.get_instance_attribute(rec.new_instance_id, attribute)
                self._set_attribute(role, rec.new_instance_id, attribute, original, current)

            self._restore_volume_tags(role, rec, instance)
        return state

    def _restore_volume_tags(self, role, rec, instance):
        for mapping in instance.get("BlockDeviceMappings") or []:
            device = mapping.get("DeviceName")
            volume_id = (mapping.get("Ebs") or {}).get("VolumeId")
            tags = rec.volume_tags.get(device)
            if volume_id and tags:
                log.debug("Restoring volume tags for device %s on %s: %s", device, volume_id, tags)
                self.gateway.tag_resource(volume_id, tags)
        log.info("%s volume tags have been restored", role.label)

    # Restored -> Deduplicated

    def deduplicate(self, state):
        log.info("8. Removing duplicated cluster nodes on the Linux instance")
        instance_id = state.linux.new_instance_id
        try:
            self.gateway.await_remote_agent_ready(instance_id, self.timeouts.agent_ready)
            self._await_cluster_responding(instance_id)
            command_id = self.gateway.run_remote_command(instance_id, self.cleanup_commands)
            self.gateway.await_remote_command(instance_id, command_id, self.timeouts.remote_command)
        except GatewayError as e:
            log.warning("Could not remove duplicated cluster nodes on Linux instance %s: %s", instance_id, e)
            log.warning(
                "The NICs were swapped. Remove the stale cluster nodes manually on %s and restart the cluster agent.",
                instance_id,
            )
            return state
        log.info("Deleted duplicated cluster nodes on the Linux instance successfully")
        return state

    def _await_cluster_responding(self, instance_id):
        def probe():
            try:
                command_id = self.gateway.run_remote_command(instance_id, [self.probe_command])
            except GatewayError as e:
                log.debug("Cluster probe on %s could not be sent: %s", instance_id, e)
                return None
            # An 'InProgress' probe usually means the cluster is not ready yet.
            self._sleep(self.poll_interval)
            return self.gateway.remote_command_status(command_id)

        poll_until(
            probe,
            lambda s: s == COMMAND_SUCCESS,
            self.timeouts.agent_responding,
            f"cluster on instance {instance_id} to respond",
            interval=self.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        log.info("Success: remote agent is responding, instance %s.", instance_id)

    # Deduplicated -> Done

    def finish(self, state):
        windows, linux = state.windows, state.linux
        log.info("Windows NIC was assigned to the Linux VM")
        log.info("To connect to the Windows VM use %s", linux.private_ip)
        log.info("To connect to the Linux VM use %s", windows.private_ip)
        log.info("To undo changes you can use the following command:")
        log.info(" -> nic-reassign --windows-ip %s --linux-ip %s", linux.private_ip, windows.private_ip)
        log.info(
            "Original instances with IDs: %s, %s were terminated, any reference to those IDs should be updated manually",
            windows.instance_id,
            linux.instance_id,
        )
        log.info(
            "New Windows instance ID: %s, New Linux instance ID: %s",
            windows.new_instance_id,
            linux.new_instance_id,
        )
        return state

    # attribute helpers, shared by forward steps and compensations

    def _set_nic_delete_on_termination(self, role, nic_id, attachment_id, desired, current):
        if desired == current:
            log.debug(
                "%s NIC %s (attachment %s) DeleteOnTermination is already %s. No action is needed.",
                role.label,
                nic_id,
                attachment_id,
                desired,
            )
            return False
        self.gateway.set_nic_delete_on_termination(nic_id, attachment_id, desired)
        log.info("%s NIC %s (attachment %s) set to DeleteOnTermination: %s.", role.label, nic_id, attachment_id, desired)
        return True

    def _set_attribute(self, role, instance_id, attribute, desired, current):
        if desired == current:
            log.debug(
                "%s %s for instance %s is already %s. No action is needed.",
                role.label,
                attribute.value,
                instance_id,
                desired,
            )
            return False
        self.gateway.set_instance_attribute(instance_id, attribute, desired)
        log.info("%s instance %s attribute %s set to %s.", role.label, instance_id, attribute.value, desired)
        return True
