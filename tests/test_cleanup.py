"""
Tests for teardown of build resources.
"""

import os

import pytest

from conftest import no_sleep
from ebs_ami_builder.cleanup import CleanupCoordinator
from ebs_ami_builder.models import ProvisionedResources
from ebs_ami_builder.provisioner import ResourceProvisioner

MUTATIONS = ("terminate_instances", "delete_volume", "delete_snapshot", "delete_key_pair")


@pytest.fixture
def provisioner(ec2, context, settings):
    return ResourceProvisioner(ec2, context, settings, sleep=no_sleep)


@pytest.fixture
def cleanup(provisioner):
    return CleanupCoordinator(provisioner)


@pytest.fixture
def resources(provisioner, context):
    """A run that failed after snapshotting its image volume."""
    resources = ProvisionedResources()
    provisioner.ensure_network_rule(resources)
    provisioner.create_keypair(resources)
    provisioner.start_instance(resources)
    provisioner.wait_for_instance_running(resources)
    context.resolved_volume_size = 8
    provisioner.create_and_attach_volume(resources)
    provisioner.detach_volume(resources.image_volume_id)
    provisioner.create_snapshot(resources)
    return resources


def mutations(ec2):
    return [c for c in ec2.calls if c in MUTATIONS]


class TestTearDown:
    """Test CleanupCoordinator.tear_down."""

    def test_reverse_order(self, cleanup, resources, ec2):
        ec2.calls.clear()

        assert cleanup.tear_down(resources) == []

        assert mutations(ec2) == ["terminate_instances", "delete_volume", "delete_snapshot", "delete_key_pair"]
        assert ec2.live_instances() == []
        assert ec2.volumes == {}
        assert ec2.snapshots == {}
        assert ec2.keypairs == set()

    def test_fields_cleared(self, cleanup, resources):
        cleanup.tear_down(resources)

        assert resources.instance_id is None
        assert resources.hostname is None
        assert resources.image_volume_id is None
        assert resources.snapshot_id is None
        assert resources.key_name is None
        assert resources.key_path is None

    def test_snapshot_kept_once_image_registered(self, cleanup, resources, ec2):
        resources.image_id = "ami-registered"
        snapshot_id = resources.snapshot_id

        cleanup.tear_down(resources)

        assert "delete_snapshot" not in ec2.calls
        assert snapshot_id in ec2.snapshots

    def test_security_group_is_never_deleted(self, cleanup, resources, ec2):
        cleanup.tear_down(resources)

        assert ec2.groups == {"ebs-ami-builder"}
        assert not any("security_group" in c for c in mutations(ec2))
        assert resources.security_group == "ebs-ami-builder"

    def test_key_file_removed(self, cleanup, resources):
        key_path = resources.key_path
        assert os.path.exists(key_path)

        cleanup.tear_down(resources)

        assert not os.path.exists(key_path)

    def test_failure_does_not_stop_teardown(self, cleanup, resources, ec2):
        ec2.fail("delete_snapshot", "InternalError", "try again later")
        snapshot_id = resources.snapshot_id

        failures = cleanup.tear_down(resources)

        assert [(f.resource, f.resource_id) for f in failures] == [("snapshot", snapshot_id)]
        assert "try again later" in failures[0].message
        assert "delete_key_pair" in ec2.calls
        assert ec2.keypairs == set()
        # Not removed, so still recorded
        assert resources.snapshot_id == snapshot_id

    def test_unconfirmed_termination_is_reported(self, cleanup, resources, ec2):
        ec2.terminated_state = "shutting-down"
        ec2.calls.clear()
        instance_id = resources.instance_id

        failures = cleanup.tear_down(resources)

        assert ("instance", instance_id) in [(f.resource, f.resource_id) for f in failures]
        # Later steps still ran
        assert "delete_snapshot" in ec2.calls
        assert "delete_key_pair" in ec2.calls

    def test_not_found_counts_as_removed(self, cleanup, ec2):
        resources = ProvisionedResources(image_volume_id="vol-gone", snapshot_id="snap-gone")
        ec2.fail("delete_snapshot", "InvalidSnapshot.NotFound")

        assert cleanup.tear_down(resources) == []
        assert resources.image_volume_id is None
        assert resources.snapshot_id is None

    def test_vanished_volume_is_not_waited_on(self, cleanup, ec2, settings):
        """A volume missing from describe results is deleted without polling."""
        resources = ProvisionedResources(image_volume_id="vol-gone")

        assert cleanup.tear_down(resources) == []
        assert len(ec2.called("describe_volumes")) == 1
        assert settings.teardown_attempts > 1
        assert resources.image_volume_id is None

    def test_second_teardown_is_a_no_op(self, cleanup, resources, ec2):
        cleanup.tear_down(resources)
        ec2.calls.clear()

        assert cleanup.tear_down(resources) == []
        assert mutations(ec2) == []

    def test_nothing_created(self, cleanup, ec2):
        assert cleanup.tear_down(ProvisionedResources()) == []
        assert ec2.calls == []

    def test_root_volume_deleted_before_image_volume(self, cleanup, provisioner, context, ec2):
        resources = ProvisionedResources()
        provisioner.ensure_network_rule(resources)
        provisioner.create_keypair(resources)
        provisioner.start_instance(resources)
        provisioner.wait_for_instance_running(resources)
        context.resolved_volume_size = 8
        provisioner.create_and_attach_volume(resources)
        provisioner.stop_instance(resources)
        provisioner.swap_root_volume(resources)
        root_volume, image_volume = resources.root_volume_id, resources.image_volume_id

        deleted = []
        delete_volume = provisioner.delete_volume
        provisioner.delete_volume = lambda vid: (deleted.append(vid), delete_volume(vid))

        assert cleanup.tear_down(resources) == []
        assert deleted == [root_volume, image_volume]
        assert ec2.volumes == {}
