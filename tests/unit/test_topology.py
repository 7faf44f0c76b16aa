import pytest

from pve_zfs_installer.errors import NoEligibleDevices
from pve_zfs_installer.lib.inventory import Device
from pve_zfs_installer.lib.topology import (
    VdevKind,
    VdevPlan,
    describe_plan,
    group_by_capacity,
    plan_pool,
)

GIB = 1024**3
THRESHOLD = 100 * GIB


def _devs(*specs):
    return [Device(path=p, capacity_bytes=c) for p, c in specs]


def _plan(devices, **kw):
    kw.setdefault("name", "rpool")
    kw.setdefault("min_mirror_size", THRESHOLD)
    return plan_pool(devices, **kw)


class TestGrouping:
    def test_groups_by_exact_capacity_in_discovery_order(self):
        devices = _devs(
            ("/dev/sda", 500 * GIB),
            ("/dev/nvme0n1", 1000 * GIB),
            ("/dev/sdb", 500 * GIB),
        )

        groups = group_by_capacity(devices)

        assert [g.capacity for g in groups] == [500 * GIB, 1000 * GIB]
        assert [d.path for d in groups[0].devices] == ["/dev/sda", "/dev/sdb"]

    def test_one_byte_difference_is_a_different_group(self):
        devices = _devs(("/dev/sda", 500 * GIB), ("/dev/sdb", 500 * GIB + 1))

        groups = group_by_capacity(devices)

        assert len(groups) == 2


class TestPlanPool:
    def test_two_equal_disks_become_one_mirror(self):
        plan = _plan(_devs(("/dev/sda", 500 * GIB), ("/dev/sdb", 500 * GIB)))

        assert plan.vdevs == (VdevPlan(VdevKind.MIRROR, ("/dev/sda", "/dev/sdb")),)

    def test_odd_device_becomes_single_in_same_pool(self):
        plan = _plan(
            _devs(
                ("/dev/sda", 500 * GIB),
                ("/dev/sdb", 500 * GIB),
                ("/dev/sdc", 500 * GIB),
            )
        )

        assert [v.kind for v in plan.vdevs] == [VdevKind.MIRROR, VdevKind.SINGLE]
        assert plan.vdevs[1].members == ("/dev/sdc",)
        assert plan.devices == ["/dev/sda", "/dev/sdb", "/dev/sdc"]

    def test_mixed_groups(self):
        plan = _plan(
            _devs(
                ("/dev/sda", 500 * GIB),
                ("/dev/sdb", 500 * GIB),
                ("/dev/nvme0n1", 1000 * GIB),
                ("/dev/nvme1n1", 1000 * GIB),
                ("/dev/sdc", 2000 * GIB),
            )
        )

        assert [(v.kind, v.members) for v in plan.vdevs] == [
            (VdevKind.MIRROR, ("/dev/sda", "/dev/sdb")),
            (VdevKind.MIRROR, ("/dev/nvme0n1", "/dev/nvme1n1")),
            (VdevKind.SINGLE, ("/dev/sdc",)),
        ]
        assert plan.mirror_count == 2
        assert plan.single_count == 1

    def test_below_threshold_never_mirrors(self):
        plan = _plan(_devs(("/dev/sda", 50 * GIB), ("/dev/sdb", 50 * GIB)))

        assert [v.kind for v in plan.vdevs] == [VdevKind.SINGLE, VdevKind.SINGLE]

    def test_threshold_is_inclusive(self):
        plan = _plan(_devs(("/dev/sda", THRESHOLD), ("/dev/sdb", THRESHOLD)))

        assert plan.mirror_count == 1

    def test_auto_mirror_disabled(self):
        plan = _plan(_devs(("/dev/sda", 500 * GIB), ("/dev/sdb", 500 * GIB)), auto_mirror=False)

        assert plan.mirror_count == 0
        assert plan.single_count == 2

    def test_excluded_devices_are_dropped(self):
        devices = [
            Device("/dev/sda", 500 * GIB),
            Device("/dev/sdb", 500 * GIB, excluded=True),
            Device("/dev/sdc", 500 * GIB),
        ]

        plan = _plan(devices)

        assert plan.vdevs == (VdevPlan(VdevKind.MIRROR, ("/dev/sda", "/dev/sdc")),)

    def test_no_devices(self):
        with pytest.raises(NoEligibleDevices):
            _plan([])

    def test_only_excluded_devices(self):
        with pytest.raises(NoEligibleDevices):
            _plan([Device("/dev/sda", 500 * GIB, excluded=True)])

    def test_same_input_same_plan(self):
        devices = _devs(
            ("/dev/sda", 500 * GIB),
            ("/dev/sdb", 1000 * GIB),
            ("/dev/sdc", 500 * GIB),
        )

        assert _plan(devices) == _plan(list(devices))

    def test_properties_carried(self):
        plan = _plan(
            _devs(("/dev/sda", 500 * GIB)),
            properties={"ashift": "12"},
            dataset_properties={"compression": "lz4"},
        )

        assert plan.properties == {"ashift": "12"}
        assert plan.dataset_properties == {"compression": "lz4"}


class TestVdevPlan:
    def test_mirror_needs_two_members(self):
        with pytest.raises(ValueError):
            VdevPlan(VdevKind.MIRROR, ("/dev/sda",))

    def test_single_needs_one_member(self):
        with pytest.raises(ValueError):
            VdevPlan(VdevKind.SINGLE, ("/dev/sda", "/dev/sdb"))

    def test_zpool_args(self):
        assert VdevPlan(VdevKind.MIRROR, ("/dev/sda", "/dev/sdb")).zpool_args() == ["mirror", "/dev/sda", "/dev/sdb"]
        assert VdevPlan(VdevKind.SINGLE, ("/dev/sdc",)).zpool_args() == ["/dev/sdc"]


def test_describe_plan_lists_every_vdev():
    plan = _plan(_devs(("/dev/sda", 500 * GIB), ("/dev/sdb", 500 * GIB), ("/dev/sdc", 500 * GIB)))

    lines = describe_plan(plan)

    assert lines[0].startswith("Pool rpool: 2 vdev(s), 1 mirror(s), 1 single(s)")
    assert "mirror /dev/sda /dev/sdb" in lines[1]
    assert "single /dev/sdc" in lines[2]
