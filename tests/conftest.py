import json
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from pve_zfs_installer.config import IdempotencyPolicy, InstallerConfig
from pve_zfs_installer.context import ProvisionContext
from pve_zfs_installer.lib.command import CmdResult, CommandError, CommandTimeout

GIB = 1024**3


def _strip_chroot(argv: List[str]) -> Tuple[List[str], bool]:
    if len(argv) >= 2 and argv[0] == "chroot":
        return argv[2:], True
    return argv, False


class FakeRunner:
    """Scripted stand-in for ``run_cmd``.

    Responses are registered per argv prefix; the newest matching
    registration wins. Commands run through ``chroot <root>`` are matched on
    the command after the root. Unmatched commands succeed with no output,
    and dry-run calls are recorded but never reach a handler.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.envs: List[Dict[str, str]] = []
        self.dry_runs: List[bool] = []
        self.inputs: List[Optional[str]] = []
        self._handlers: List[Tuple[Tuple[str, ...], Optional[bool], Callable[[List[str]], Tuple]]] = []

    def on(
        self,
        *prefix: str,
        rc: int = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        rcs: Optional[Sequence[int]] = None,
        func: Optional[Callable[[List[str]], Tuple]] = None,
        chroot: Optional[bool] = None,
    ) -> None:
        if func is None:
            queue = list(rcs) if rcs is not None else None

            def func(argv, _rc=rc):
                if queue:
                    code = queue.pop(0) if len(queue) > 1 else queue[0]
                else:
                    code = _rc
                return code, stdout, stderr, timed_out

        self._handlers.append((tuple(prefix), chroot, func))

    def _respond(self, argv: List[str]) -> Tuple[int, str, str, bool]:
        cmd, in_chroot = _strip_chroot(argv)
        for prefix, chroot, func in reversed(self._handlers):
            if chroot is not None and chroot != in_chroot:
                continue
            if tuple(cmd[: len(prefix)]) == prefix:
                out = func(cmd)
                rc, stdout = out[0], out[1]
                stderr = out[2] if len(out) > 2 else ""
                timed_out = out[3] if len(out) > 3 else False
                return rc, stdout, stderr, timed_out
        return 0, "", "", False

    def __call__(
        self,
        argv,
        *,
        check=True,
        env=None,
        cwd=None,
        input_text=None,
        timeout=None,
        dry_run=False,
    ) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        self.dry_runs.append(dry_run)
        self.inputs.append(input_text)
        if dry_run:
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")
        rc, stdout, stderr, timed_out = self._respond(argv)
        result = CmdResult(argv=argv, returncode=rc, stdout=stdout, stderr=stderr, timed_out=timed_out)
        if check and timed_out:
            raise CommandTimeout(result, timeout or 0.0)
        if check and rc != 0:
            raise CommandError(result)
        return result

    def calls_matching(self, *prefix: str, chroot: Optional[bool] = None) -> List[List[str]]:
        found = []
        for argv in self.calls:
            cmd, in_chroot = _strip_chroot(argv)
            if chroot is not None and chroot != in_chroot:
                continue
            if tuple(cmd[: len(prefix)]) == prefix:
                found.append(argv)
        return found

    def ran(self, *prefix: str, chroot: Optional[bool] = None) -> bool:
        return bool(self.calls_matching(*prefix, chroot=chroot))

    def index_of(self, *prefix: str) -> int:
        for i, argv in enumerate(self.calls):
            cmd, _ = _strip_chroot(argv)
            if tuple(cmd[: len(prefix)]) == prefix:
                return i
        raise ValueError(prefix)


class FakeSystem:
    """In-memory disks, pools, datasets and mount table behind a FakeRunner.

    ``fail`` holds command keys such as ``"zpool create"`` or ``"zfs mount"``
    that should exit non-zero. ``busy`` maps a mount target to how stubborn
    it is: ``"holders"`` (clears once its holders are killed), ``"lazy"``
    (only ``umount -l`` works) or ``"never"``.
    """

    def __init__(self, runner: FakeRunner, disks: Optional[Dict[str, int]] = None):
        self.runner = runner
        self.disks: Dict[str, int] = dict(disks or {})
        self.pools: Dict[str, List[List[str]]] = {}
        self.exported: Dict[str, List[List[str]]] = {}
        self.datasets: Dict[str, Dict[str, str]] = {}
        self.mounted: Dict[str, str] = {}
        self.busy: Dict[str, str] = {}
        self.vfat: List[str] = []
        self.fail: Set[str] = set()
        self.zfs_loaded = True

        runner.on("lsblk", "-J", func=self._lsblk_json)
        runner.on("lsblk", "-rpno", func=self._lsblk_raw)
        runner.on("blockdev", "--getsize64", func=self._blockdev)
        runner.on("lsmod", func=lambda argv: (0, "Module Size Used by\nzfs 1234 0\n" if self.zfs_loaded else "Module Size Used by\n"))
        runner.on("zpool", func=self._zpool)
        runner.on("zfs", func=self._zfs)
        runner.on("mount", func=self._mount)
        runner.on("mountpoint", func=self._mountpoint)
        runner.on("umount", func=self._umount)
        runner.on("fuser", func=self._fuser)
        runner.on("kill", func=self._kill)
        runner.on("findmnt", func=self._findmnt)

    def add_pool(self, name: str, *vdev: str) -> None:
        self.pools[name] = [list(vdev)]
        self.datasets[name] = {}

    def _failing(self, key: str) -> bool:
        return key in self.fail

    def _lsblk_json(self, argv):
        devs = [{"name": p.rsplit("/", 1)[-1], "size": s, "type": "disk"} for p, s in self.disks.items()]
        return 0, json.dumps({"blockdevices": devs})

    def _lsblk_raw(self, argv):
        if argv[2] == "NAME,FSTYPE,TYPE":
            return 0, "".join(f"{p} vfat part\n" for p in self.vfat)
        return 0, ""

    def _blockdev(self, argv):
        size = self.disks.get(argv[-1])
        if size is None:
            return 1, ""
        return 0, f"{size}\n"

    def _zpool(self, argv):
        sub = argv[1] if len(argv) > 1 else ""
        name = argv[-1]
        if self._failing(f"zpool {sub}"):
            return 1, "", f"cannot {sub}"

        if sub == "list":
            return (0, f"{name}\n") if name in self.pools else (1, "", "no such pool")
        if sub == "create":
            args = [a for a in argv[2:] if a != "-f"]
            while args and args[0] == "-o":
                args = args[2:]
            self.add_pool(args[0], *args[1:])
            return 0, ""
        if sub == "add":
            args = [a for a in argv[2:] if a != "-f"]
            if args[0] not in self.pools:
                return 1, "", "no such pool"
            self.pools[args[0]].append(args[1:])
            return 0, ""
        if sub in ("export", "destroy"):
            if name not in self.pools:
                return 1, "", "no such pool"
            vdevs = self.pools.pop(name)
            if sub == "export":
                self.exported[name] = vdevs
            for ds in [d for d in self.datasets if d == name or d.startswith(f"{name}/")]:
                del self.datasets[ds]
            return 0, ""
        if sub == "import":
            if name not in self.exported:
                return 1, "", "no such pool available for import"
            self.pools[name] = self.exported.pop(name)
            self.datasets.setdefault(name, {})
            return 0, ""
        if sub == "status":
            if name not in self.pools:
                return 1, ""
            lines = [f"  pool: {name}", "config:", f"\t{name}  ONLINE"]
            for vdev in self.pools[name]:
                for m in vdev:
                    if m.startswith("/dev/"):
                        lines.append(f"\t  {m}  ONLINE  0  0  0")
            return 0, "\n".join(lines) + "\n"
        return 0, ""

    def _zfs(self, argv):
        sub = argv[1] if len(argv) > 1 else ""
        if self._failing(f"zfs {sub}"):
            return 1, "", f"cannot {sub}"

        if sub == "list":
            pool = argv[-1]
            if pool not in self.datasets:
                return 1, "", "dataset does not exist"
            names = [d for d in self.datasets if d == pool or d.startswith(f"{pool}/")]
            return 0, "".join(f"{n}\n" for n in names)
        if sub == "create":
            props = {}
            args = argv[2:]
            while args and args[0] == "-o":
                k, v = args[1].split("=", 1)
                props[k] = v
                args = args[2:]
            self.datasets[args[0]] = props
            return 0, ""
        if sub == "set":
            k, v = argv[2].split("=", 1)
            ds = argv[3]
            if ds not in self.datasets or self._failing(f"zfs set {k}"):
                return 1, "", "cannot set property"
            self.datasets[ds][k] = v
            return 0, ""
        if sub == "mount":
            ds = argv[-1]
            mp = self.datasets.get(ds, {}).get("mountpoint")
            if not mp or mp in ("none", "legacy"):
                return 1, "", "cannot mount"
            self.mounted[mp] = ds
            return 0, ""
        if sub == "unmount":
            ds = argv[-1]
            for t in [t for t, s in self.mounted.items() if s == ds]:
                del self.mounted[t]
            return 0, ""
        return 0, ""

    def _mount(self, argv):
        source, target = argv[-2], argv[-1]
        if self._failing("mount") or self._failing(f"mount {target}"):
            return 32, "", "mount failed"
        self.mounted[target] = source
        return 0, ""

    def _mountpoint(self, argv):
        return (0, "") if argv[-1] in self.mounted else (32, "")

    def _umount(self, argv):
        target = argv[-1]
        flag = argv[1] if len(argv) == 3 else None
        if target not in self.mounted:
            return 32, "", "not mounted"
        mode = self.busy.get(target)
        if mode is None or (mode == "lazy" and flag == "-l"):
            del self.mounted[target]
            self.busy.pop(target, None)
            return 0, ""
        return 32, "", "target is busy"

    def _fuser(self, argv):
        target = argv[-1]
        if self.busy.get(target) == "holders":
            return 0, " 4242 4343"
        return 1, ""

    def _kill(self, argv):
        for target, mode in list(self.busy.items()):
            if mode == "holders":
                del self.busy[target]
        return 0, ""

    def _findmnt(self, argv):
        lines = [f"{s} {t}" for t, s in self.mounted.items() if s in self.datasets]
        return 0, "".join(f"{line}\n" for line in lines)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def system(runner):
    return FakeSystem(
        runner,
        disks={
            "/dev/sda": 500 * GIB,
            "/dev/sdb": 500 * GIB,
        },
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def config(tmp_path):
    return InstallerConfig(
        target_root=str(tmp_path / "target"),
        staging_dir=str(tmp_path / "stage"),
        donor_root=str(tmp_path / "donor"),
        firmware="legacy",
        idempotency=IdempotencyPolicy.FAIL,
        settle_delay=0.0,
    )


@pytest.fixture
def make_ctx(runner, config, sleeps):
    def _make(confirm=lambda question: False, **changes):
        cfg = config.replace(**changes) if changes else config
        return ProvisionContext(
            config=cfg,
            runner=runner,
            sleep=sleeps.append,
            confirm=confirm,
            which=lambda name: f"/usr/sbin/{name}",
            geteuid=lambda: 0,
        )

    return _make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()
