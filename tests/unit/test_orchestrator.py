import pytest

from pve_zfs_installer.errors import BootloaderPartial, InstallerError, PoolBuildFailed
from pve_zfs_installer.lib.mounts import MountKind
from pve_zfs_installer.orchestrator import (
    EXIT_DEGRADED,
    EXIT_FATAL,
    EXIT_OK,
    PhaseOutcome,
    PhaseStatus,
    run_phases,
)


class FakePhase:
    def __init__(self, name, critical=False, outcome=None, raises=None, action=None):
        self.name = name
        self.critical = critical
        self.outcome = outcome
        self.raises = raises
        self.action = action
        self.ran = False

    def run(self, ctx, state):
        self.ran = True
        if self.action is not None:
            self.action(ctx, state)
        if self.raises is not None:
            raise self.raises
        return self.outcome or PhaseOutcome.ok()


class Summarized:
    def summary(self):
        return {"answer": 42}


def test_all_phases_succeed(ctx):
    phases = [FakePhase("a", critical=True), FakePhase("b")]

    state = run_phases(ctx, phases)

    assert [p.status for p in state.phases] == [PhaseStatus.SUCCEEDED, PhaseStatus.SUCCEEDED]
    assert state.exit_code == EXIT_OK


def test_critical_failure_aborts(ctx):
    later = FakePhase("c")
    phases = [FakePhase("a"), FakePhase("b", critical=True, raises=PoolBuildFailed("no pool")), later]

    state = run_phases(ctx, phases)

    assert state.aborted_at == "b"
    assert state.phase("b").status == PhaseStatus.FAILED
    assert state.phase("b").remediation == PoolBuildFailed.remediation
    assert state.phase("c").status == PhaseStatus.PENDING
    assert not later.ran
    assert state.exit_code == EXIT_FATAL


def test_non_critical_failure_degrades_and_continues(ctx):
    later = FakePhase("c")
    phases = [FakePhase("b", raises=InstallerError("meh", remediation="try again")), later]

    state = run_phases(ctx, phases)

    assert state.phase("b").status == PhaseStatus.DEGRADED
    assert state.phase("b").error == "meh"
    assert state.phase("b").remediation == "try again"
    assert later.ran
    assert state.overall_degraded
    assert state.exit_code == EXIT_DEGRADED


def test_degraded_is_sticky(ctx):
    phases = [
        FakePhase("a", outcome=PhaseOutcome.degraded(BootloaderPartial("sdb"), notes=["sdb failed"])),
        FakePhase("b"),
        FakePhase("c"),
    ]

    state = run_phases(ctx, phases)

    assert state.phase("a").notes == ["sdb failed"]
    assert state.phase("c").status == PhaseStatus.SUCCEEDED
    assert state.exit_code == EXIT_DEGRADED


def test_unexpected_exception_is_contained(ctx, caplog):
    phases = [FakePhase("a", raises=RuntimeError("boom")), FakePhase("b", critical=True, raises=KeyError("x"))]

    state = run_phases(ctx, phases)

    assert state.phase("a").status == PhaseStatus.DEGRADED
    assert state.phase("a").error == "boom"
    assert state.phase("a").remediation is None
    assert state.aborted_at == "b"
    assert "failed unexpectedly" in caplog.text


def test_mounts_are_released_when_aborting(system, ctx, tmp_path):
    target = str(tmp_path / "mnt")

    def mount(ctx, state):
        ctx.mounts.acquire("/dev/sda1", target, fstype="ext4")

    state = run_phases(ctx, [FakePhase("a", critical=True, action=mount, raises=PoolBuildFailed("x"))])

    assert state.aborted_at == "a"
    assert target not in system.mounted
    assert ctx.mounts.handles == []
    assert state.busy_mounts == []


def test_busy_mounts_are_reported(system, ctx, tmp_path):
    target = str(tmp_path / "mnt")
    system.busy[target] = "never"

    def mount(ctx, state):
        ctx.mounts.acquire("rpool/ROOT/pve-1", target, MountKind.ZFS)

    state = run_phases(ctx, [FakePhase("a", action=mount)])

    assert state.busy_mounts == [target]
    assert state.exit_code == EXIT_OK
    assert state.to_dict()["busy_mounts"] == [target]


def test_results_are_visible_to_later_phases(ctx):
    seen = []
    phases = [
        FakePhase("a", outcome=PhaseOutcome.ok(Summarized())),
        FakePhase("b", action=lambda ctx, state: seen.append(state.result_of("a"))),
    ]

    state = run_phases(ctx, phases)

    assert isinstance(seen[0], Summarized)
    assert state.result_of("missing") is None
    with pytest.raises(KeyError):
        state.phase("missing")


def test_report(ctx):
    phases = [
        FakePhase("a", critical=True, outcome=PhaseOutcome.ok(Summarized(), ["fine"])),
        FakePhase("b", raises=InstallerError("meh")),
    ]

    report = run_phases(ctx, phases).to_dict()

    assert report["exit_code"] == EXIT_DEGRADED
    assert report["aborted_at"] is None
    assert report["phases"][0] == {
        "name": "a",
        "critical": True,
        "status": "succeeded",
        "notes": ["fine"],
        "error": None,
        "remediation": None,
        "result": {"answer": 42},
    }
    assert report["phases"][1]["status"] == "degraded"
    assert report["phases"][1]["result"] is None
