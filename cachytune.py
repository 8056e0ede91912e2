#!/usr/bin/python3
"""cachytune: apply an OS-level performance profile to a CachyOS host.

Two profiles (Balanced, Aggressive) rewrite a fixed set of sysctl, systemd,
udev and zram config files and poke a few sysfs knobs.  Every file is copied
to ``<path>.bak.<token>`` before it is overwritten; ``--rollback`` finds those
copies and puts the originals back.
"""

import argparse
import contextlib
import glob
import json
import os
import re
import signal
import stat
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# ── Constants ────────────────────────────────────────────────────────────────

SNAPSHOT_INFIX = ".bak."
ROLLBACK_ROOT = Path("/etc")

PROFILES = ("balanced", "aggressive")
SELECTIONS = {"1": "balanced", "2": "aggressive"}

STATUSES = ("success", "skipped", "failed")

CPU_DRIVER_PATH = Path("/sys/devices/system/cpu/cpu0/cpufreq/scaling_driver")
MEMINFO_PATH = Path("/proc/meminfo")

HUGEPAGES_MIN_RAM_GB = 32
HUGEPAGES_COUNT = 2048


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    UNDO     = "\uf0e2"   # rotate-left
    WRENCH   = "\uf0ad"   # wrench
    LINUX    = "\uf17c"   # tux
    STAMP    = "\uf249"   # id-badge


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _step(step: int, total: int, title: str) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n  {_C.BOLD}{_I.WRENCH}  {title}{_C.RESET}  {tag}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── Errors ───────────────────────────────────────────────────────────────────

class CachytuneError(Exception):
    """Base class for every error cachytune raises deliberately."""


class PreflightError(CachytuneError):
    """Fatal error raised before any action runs; main() exits 1."""


class InsufficientPrivilege(PreflightError):
    pass


class InvalidSelection(PreflightError):
    pass


class SnapshotSearchFailure(PreflightError):
    """The rollback search root could not be listed at all."""


class ActionError(CachytuneError):
    """A single action failed.  Recorded in the report; the session goes on."""


class SnapshotFailure(ActionError):
    pass


class WriteFailure(ActionError):
    pass


class ExternalCommandFailure(ActionError):
    pass


class RestoreFailure(CachytuneError):
    """One file could not be restored during rollback."""


# ── Host detection ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HostFacts:
    cpu_driver: str = "unknown"
    ram_gb: int = 0


def detect_host(cpu_driver_path: Optional[Path] = None,
                meminfo_path: Optional[Path] = None) -> HostFacts:
    """Read the cpufreq scaling driver and MemTotal (whole GiB, rounded down)."""
    cpu_driver_path = cpu_driver_path or CPU_DRIVER_PATH
    meminfo_path = meminfo_path or MEMINFO_PATH

    try:
        driver = cpu_driver_path.read_text().strip() or "unknown"
    except (OSError, UnicodeDecodeError):
        driver = "unknown"

    ram_gb = 0
    try:
        with open(meminfo_path) as fh:
            for line in fh:
                if line.startswith("MemTotal:"):
                    ram_gb = int(line.split()[1]) // 1024 // 1024
                    break
    except (OSError, ValueError, IndexError):
        _warn(f"Cannot read MemTotal from {meminfo_path}; assuming 0 GiB")

    return HostFacts(cpu_driver=driver, ram_gb=ram_gb)


# ── Actions / profiles ───────────────────────────────────────────────────────

def _require_absolute(path: Path) -> None:
    if not path.is_absolute():
        raise ValueError(f"config path must be absolute: {path}")


@dataclass(frozen=True)
class WriteFile:
    """Replace *path* with *content*; the old file is snapshotted first."""

    path: Path
    content: str

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        _require_absolute(self.path)

    def describe(self) -> str:
        return f"write {self.path}"


@dataclass(frozen=True)
class AppendLine:
    """Append *line* to *path* unless that exact line is already there."""

    path: Path
    line: str

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        _require_absolute(self.path)
        if "\n" in self.line:
            raise ValueError(f"AppendLine takes a single line, got {self.line!r}")

    def describe(self) -> str:
        return f"append '{self.line}' to {self.path}"


@dataclass(frozen=True)
class SetDirective:
    """Rewrite the first ``key`` line (commented or not) of *path* to *line*."""

    path: Path
    key: str
    line: str

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        _require_absolute(self.path)

    def describe(self) -> str:
        return f"set '{self.line}' in {self.path}"


@dataclass(frozen=True)
class RunExternal:
    """Blocking external command.  Not snapshotted, not rolled back."""

    argv: tuple
    label: str = ""

    def __post_init__(self):
        object.__setattr__(self, "argv", tuple(str(a) for a in self.argv))
        if not self.argv:
            raise ValueError("RunExternal needs a command")

    def describe(self) -> str:
        cmd = " ".join(self.argv)
        return f"{self.label}: {cmd}" if self.label else cmd


@dataclass(frozen=True)
class SetRuntimeParam:
    """Write *value* into every sysfs/procfs file matching *pattern*.

    Runtime knobs reset on reboot, so they are never snapshotted.
    """

    pattern: str
    value: str
    label: str = ""

    def describe(self) -> str:
        prefix = f"{self.label}: " if self.label else ""
        return f"{prefix}{self.value} > {self.pattern}"


Action = Union[WriteFile, AppendLine, SetDirective, RunExternal, SetRuntimeParam]


@dataclass(frozen=True)
class Profile:
    key: str
    name: str
    summary: tuple
    actions: tuple


_ZRAM_CONF = """\
[zram0]
zram-size = ram / 2
compression-algorithm = zstd"""

_IO_SCHEDULER_RULES = (
    'ACTION=="add|change", KERNEL=="nvme[0-9]n[0-9]", '
    'ATTR{queue/scheduler}="mq-deadline"\n'
    'ACTION=="add|change", KERNEL=="sd[a-z]", ATTR{queue/scheduler}="none"'
)

_THP_CONF = """\
vm.transparent_hugepage.enabled = madvise
vm.transparent_hugepage.defrag = never"""

_USER_SLICE_IO = """\
[Slice]
IOWeight=1000"""

_LATENCY_CONF = """\
kernel.sched_autogroup_enabled = 0
kernel.sched_migration_cost_ns = 5000000
vm.dirty_ratio = 10
vm.dirty_background_ratio = 5"""

_NETQ_CONF = """\
net.core.rps_sock_flow_entries = 32768
net.core.netdev_max_backlog = 16384"""

_SCHED_CONF = """\
kernel.sched_min_granularity_ns = 10000000
kernel.sched_wakeup_granularity_ns = 15000000"""

# Shell expansion of the existing value happens when grub sources the file.
_GRUB_CMDLINE = ('GRUB_CMDLINE_LINUX_DEFAULT="$GRUB_CMDLINE_LINUX_DEFAULT '
                 'nohz_full=all transparent_hugepage=never"')

_BALANCED_SUMMARY = (
    "BORE kernel",
    "CPU driver auto-optimization",
    "ZRAM (ram/2, zstd)",
    "TCP BBR",
    "I/O scheduler tuning",
    "HugePages (RAM-aware)",
    "Transparent HugePages tuning",
    "vm.max_map_count",
    "systemd latency tweaks",
    "sysctl latency tuning",
)

_AGGRESSIVE_SUMMARY = (
    "Everything in Balanced mode, plus:",
    "Disable NUMA balancing",
    "Disable kernel watchdog",
    "Disable kernel debug",
    "IRQ split",
    "Scheduler granularity tuning",
    "VFS cache pressure tuning",
    "Network queue tuning",
    "Lower swappiness",
    "Kernel boot flags: nohz_full=all transparent_hugepage=never",
)


def hugepages_for(host: HostFacts) -> int:
    return HUGEPAGES_COUNT if host.ram_gb >= HUGEPAGES_MIN_RAM_GB else 0


def _cpu_actions(host: HostFacts) -> list:
    """Pick CPU frequency tuning by scaling driver."""
    if host.cpu_driver in ("amd-pstate", "amd-pstate-epp"):
        return [
            SetRuntimeParam(
                "/sys/devices/system/cpu/cpu*/cpufreq/energy_performance_preference",
                "performance", label="amd-pstate EPP",
            ),
        ]
    if host.cpu_driver == "intel_pstate":
        return [
            SetRuntimeParam("/sys/devices/system/cpu/intel_pstate/min_perf_pct",
                            "100", label="intel_pstate min perf"),
            SetRuntimeParam("/sys/devices/system/cpu/intel_pstate/max_perf_pct",
                            "100", label="intel_pstate max perf"),
        ]
    return [
        RunExternal(("pacman", "-S", "--needed", "--noconfirm", "cpupower"),
                    label="cpupower fallback"),
        RunExternal(("systemctl", "enable", "--now", "cpupower")),
        SetDirective("/etc/default/cpupower", "governor",
                     "governor='performance'"),
    ]


def _balanced_actions(host: HostFacts) -> list:
    actions = [
        RunExternal(("pacman", "-S", "--needed", "--noconfirm",
                     "linux-cachyos-bore", "linux-cachyos-bore-headers"),
                    label="BORE kernel"),
    ]
    actions += _cpu_actions(host)
    actions += [
        WriteFile("/etc/systemd/zram-generator.conf", _ZRAM_CONF),
        RunExternal(("systemctl", "daemon-reload")),
        WriteFile("/etc/sysctl.d/99-bbr.conf",
                  "net.ipv4.tcp_congestion_control = bbr"),
        WriteFile("/etc/udev/rules.d/60-io-scheduler.rules", _IO_SCHEDULER_RULES),
        RunExternal(("udevadm", "control", "--reload-rules")),
        RunExternal(("udevadm", "trigger")),
        WriteFile("/etc/sysctl.d/hugepages.conf",
                  f"vm.nr_hugepages = {hugepages_for(host)}"),
        WriteFile("/etc/sysctl.d/99-thp.conf", _THP_CONF),
        WriteFile("/etc/sysctl.d/99-map.conf", "vm.max_map_count = 1048576"),
        AppendLine("/etc/systemd/system.conf", "RuntimeWatchdogSec=0"),
        AppendLine("/etc/systemd/system.conf", "ShutdownWatchdogSec=0"),
        WriteFile("/etc/systemd/system/user-.slice.d/io.conf", _USER_SLICE_IO),
        WriteFile("/etc/sysctl.d/99-latency.conf", _LATENCY_CONF),
    ]
    return actions


def _aggressive_extras() -> list:
    return [
        WriteFile("/etc/sysctl.d/99-numa.conf", "kernel.numa_balancing = 0"),
        WriteFile("/etc/sysctl.d/99-kdebug.conf", "kernel.kptr_restrict = 0"),
        WriteFile("/etc/sysctl.d/99-irq.conf", "kernel.irqchip.split = 1"),
        WriteFile("/etc/sysctl.d/99-vfs.conf", "vm.vfs_cache_pressure = 50"),
        WriteFile("/etc/sysctl.d/99-netq.conf", _NETQ_CONF),
        WriteFile("/etc/sysctl.d/99-swap.conf", "vm.swappiness = 10"),
        WriteFile("/etc/sysctl.d/99-sched.conf", _SCHED_CONF),
        AppendLine("/etc/default/grub", _GRUB_CMDLINE),
        RunExternal(("grub-mkconfig", "-o", "/boot/grub/grub.cfg")),
    ]


def select_profile(choice) -> str:
    """Map the ordinal menu choice ("1" / "2") to a profile key."""
    key = SELECTIONS.get(str(choice).strip())
    if key is None:
        raise InvalidSelection(f"Invalid selection: {choice!r} (enter 1 or 2)")
    return key


def build_profile(key: str, host: HostFacts) -> Profile:
    """Build the immutable action list for *key* on this host."""
    if key not in PROFILES:
        raise InvalidSelection(f"Unknown profile: {key!r}")

    actions = _balanced_actions(host)
    if key == "aggressive":
        actions += _aggressive_extras()
        name, summary = "Aggressive OS Optimization", _AGGRESSIVE_SUMMARY
    else:
        name, summary = "Balanced & Safe", _BALANCED_SUMMARY
    actions.append(RunExternal(("sysctl", "--system"), label="reload sysctl"))

    return Profile(key=key, name=name, summary=summary, actions=tuple(actions))


# ── Results ──────────────────────────────────────────────────────────────────

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one action: success, skipped or failed."""

    seq: int
    action: str
    status: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class SessionReport:
    profile: str
    results: list = field(default_factory=list)
    interrupted: bool = False
    started: str = field(default_factory=_now)
    finished: Optional[str] = None

    def counts(self) -> dict:
        counts = dict.fromkeys(STATUSES, 0)
        for result in self.results:
            counts[result.status] += 1
        return counts

    @property
    def failed(self) -> list:
        return [r for r in self.results if r.status == "failed"]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["counts"] = self.counts()
        return data

    def save(self, path: Path) -> None:
        """Write the report as JSON, replacing *path* atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(self.to_dict(), indent=2) + "\n"
        _atomic_write(path, text.encode())


@dataclass(frozen=True)
class RestoreResult:
    original: str
    snapshot: Optional[str]
    status: str
    superseded: tuple = ()
    error_message: Optional[str] = None


@dataclass
class RollbackReport:
    search_root: str
    results: list = field(default_factory=list)

    @property
    def restored(self) -> list:
        return [r for r in self.results if r.status == "restored"]

    @property
    def failed(self) -> list:
        return [r for r in self.results if r.status == "failed"]


# ── Snapshots ────────────────────────────────────────────────────────────────

def _atomic_write(path: Path, data: bytes, mode: Optional[int] = None) -> None:
    """Replace *path* with *data* through a temp file in the same directory.

    An existing file keeps its permission bits and owner unless *mode* is
    given.  Readers see either the old bytes or the new ones, never a mix.
    A symlinked *path* is written through: its target is replaced and the
    link stays a link.
    """
    path = Path(path).resolve()
    try:
        st = path.stat()
    except FileNotFoundError:
        st = None
    if mode is None:
        mode = stat.S_IMODE(st.st_mode) if st else 0o644

    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.",
                               suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, mode)
        if st is not None:
            os.chown(tmp, st.st_uid, st.st_gid)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


@dataclass(frozen=True)
class Snapshot:
    original: Path
    path: Path
    token: int

    @property
    def created(self) -> datetime:
        return datetime.fromtimestamp(self.token / 1e9, timezone.utc)


class SnapshotStore:
    """Sibling ``<path>.bak.<token>`` copies taken before a file changes.

    The token is a nanosecond timestamp.  Snapshots are never overwritten and
    never deleted here; several may exist for the same original.
    """

    def __init__(self, infix: str = SNAPSHOT_INFIX, clock=time.time_ns):
        self.infix = infix
        self._clock = clock

    def snapshot_path(self, path: Path, token: int) -> Path:
        return path.with_name(f"{path.name}{self.infix}{token}")

    def parse(self, path) -> Optional[Snapshot]:
        """Invert the naming convention; None for anything else."""
        path = Path(path)
        stem, sep, token = path.name.rpartition(self.infix)
        if not sep or not stem or not token.isdigit():
            return None
        return Snapshot(original=path.with_name(stem), path=path,
                        token=int(token))

    def snapshot(self, path) -> Optional[Snapshot]:
        """Copy *path* aside.  Returns None when there is nothing to preserve.

        Raises SnapshotFailure on any I/O error; callers must not write.
        """
        path = Path(path)
        if not path.exists():
            return None

        try:
            data = path.read_bytes()
        except OSError as exc:
            raise SnapshotFailure(f"cannot read {path} for snapshot: {exc}") from exc

        token = self._clock()
        while True:
            target = self.snapshot_path(path, token)
            try:
                fh = open(target, "xb")
            except FileExistsError:
                token += 1
                continue
            except OSError as exc:
                raise SnapshotFailure(f"cannot create {target}: {exc}") from exc
            try:
                with fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(target, stat.S_IMODE(path.stat().st_mode))
            except OSError as exc:
                target.unlink(missing_ok=True)
                raise SnapshotFailure(f"cannot write {target}: {exc}") from exc
            return Snapshot(original=path, path=target, token=token)

    def find(self, search_root) -> dict:
        """Map each original path under *search_root* to its snapshots, oldest first."""
        root = Path(search_root)
        try:
            with os.scandir(root):
                pass
        except OSError as exc:
            raise SnapshotSearchFailure(f"cannot search {root}: {exc}") from exc

        def _onerror(err: OSError) -> None:
            _warn(f"Cannot read {err.filename}: {err.strerror}")

        found = {}
        for dirpath, _dirnames, filenames in os.walk(root, onerror=_onerror):
            for name in filenames:
                snap = self.parse(Path(dirpath) / name)
                if snap is not None:
                    found.setdefault(snap.original, []).append(snap)

        for snaps in found.values():
            snaps.sort(key=lambda s: s.token)
        return dict(sorted(found.items()))

    def restore(self, snap: Snapshot) -> None:
        """Copy *snap* back over its original in one atomic replace."""
        try:
            data = snap.path.read_bytes()
            _atomic_write(snap.original, data,
                          mode=stat.S_IMODE(snap.path.stat().st_mode))
        except OSError as exc:
            raise RestoreFailure(
                f"cannot restore {snap.original} from {snap.path}: {exc}"
            ) from exc

    def restore_all(self, search_root) -> list:
        """Restore every original under *search_root* from its earliest snapshot.

        The earliest snapshot holds the content from before the first change;
        later ones are reported as superseded and left on disk.
        """
        results = []
        for original, snaps in self.find(search_root).items():
            chosen, later = snaps[0], tuple(str(s.path) for s in snaps[1:])
            try:
                self.restore(chosen)
            except RestoreFailure as exc:
                results.append(RestoreResult(
                    original=str(original), snapshot=str(chosen.path),
                    status="failed", superseded=later, error_message=str(exc),
                ))
                continue
            results.append(RestoreResult(
                original=str(original), snapshot=str(chosen.path),
                status="restored", superseded=later,
            ))
        return results


# ── Writers ──────────────────────────────────────────────────────────────────

class FileWriter:
    """Full-content writes that always snapshot the previous file first."""

    def __init__(self, store: SnapshotStore):
        self.store = store

    def write(self, path, content: str) -> Optional[Snapshot]:
        text = content.rstrip("\n") + "\n"
        return self.replace(path, text.encode())

    def replace(self, path, data: bytes) -> Optional[Snapshot]:
        """Snapshot *path*, then swap in *data* byte for byte."""
        path = Path(path)
        _require_absolute(path)
        # SnapshotFailure propagates before the target is touched.
        snap = self.store.snapshot(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, data)
        except OSError as exc:
            raise WriteFailure(f"cannot write {path}: {exc}") from exc
        return snap

    def set_directive(self, path, key: str, line: str) -> tuple:
        """Replace the first line setting *key* with *line*.

        Returns ``(status, detail)``.  Missing file or key is a skip, not an
        error: there is nothing to tune.  Lines are compared as bytes, so
        other lines keep their encoding and line endings.
        """
        path = Path(path)
        if not path.exists():
            return "skipped", f"{path} not found"
        try:
            lines = path.read_bytes().split(b"\n")
        except OSError as exc:
            raise WriteFailure(f"cannot read {path}: {exc}") from exc

        new = line.encode()
        key_re = re.compile(rb"^\s*(#\s*)?" + re.escape(key.encode()) + rb"(\s|=)")
        for idx, existing in enumerate(lines):
            if key_re.match(existing):
                if existing == new:
                    return "skipped", "already set"
                lines[idx] = new
                self.replace(path, b"\n".join(lines))
                return "success", None
        return "skipped", f"no '{key}' directive in {path}"


class IdempotentAppender:
    """Line appends that are no-ops when the exact line is already present.

    Matching is on whole ``\\n``-terminated lines of raw bytes, like
    ``grep -qxF``; existing content is kept byte for byte.  Existing files
    are snapshotted before the first real append so rollback covers appends
    too.  A skipped append takes no snapshot.
    """

    def __init__(self, store: SnapshotStore):
        self.store = store

    def append_if_absent(self, path, line: str) -> str:
        path = Path(path)
        _require_absolute(path)
        needle = line.rstrip("\n").encode()

        exists = path.exists()
        try:
            current = path.read_bytes() if exists else b""
        except OSError as exc:
            raise WriteFailure(f"cannot read {path}: {exc}") from exc

        if needle in current.split(b"\n"):
            return "skipped"

        if exists:
            self.store.snapshot(path)
        if current and not current.endswith(b"\n"):
            current += b"\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, current + needle + b"\n")
        except OSError as exc:
            raise WriteFailure(f"cannot append to {path}: {exc}") from exc
        return "success"


# ── External commands ────────────────────────────────────────────────────────

class CommandRunner:
    """Blocking subprocess calls (pacman, systemctl, udevadm, grub-mkconfig)."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def run(self, argv) -> subprocess.CompletedProcess:
        pretty = " ".join(str(a) for a in argv)
        if not self.quiet:
            _info(f"Running: {pretty}")
        try:
            result = subprocess.run(list(argv), check=False)
        except OSError as exc:
            raise ExternalCommandFailure(f"cannot run {pretty}: {exc}") from exc
        if result.returncode != 0:
            raise ExternalCommandFailure(f"exited {result.returncode}: {pretty}")
        return result


def set_runtime_param(pattern: str, value: str) -> tuple:
    """Write *value* to each path matching *pattern*; ``(status, detail)``."""
    paths = sorted(glob.glob(pattern))
    if not paths:
        return "skipped", f"no match for {pattern}"

    failures = []
    for p in paths:
        try:
            with open(p, "w") as fh:
                fh.write(value)
        except OSError as exc:
            failures.append(f"{p}: {exc.strerror or exc}")
    if failures:
        raise ExternalCommandFailure("; ".join(failures))
    return "success", f"{len(paths)} path(s)"


# ── Applier ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionContext:
    """Everything a run needs, validated once before any action."""

    profile: Profile
    host: HostFacts = field(default_factory=HostFacts)
    dry_run: bool = False
    yes: bool = False
    quiet: bool = False


@contextlib.contextmanager
def _deferred_signals(handler):
    """Route SIGINT/SIGTERM to *handler* instead of raising mid-action."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {sig: signal.signal(sig, handler)
                for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


class ProfileApplier:
    """Run a profile's actions in order, recording one result per action.

    A failing action never stops the run; a stop request (SIGINT/SIGTERM)
    lets the current action finish and skips the rest.
    """

    def __init__(self, ctx: SessionContext, writer: Optional[FileWriter] = None,
                 appender: Optional[IdempotentAppender] = None,
                 runner: Optional[CommandRunner] = None):
        self.ctx = ctx
        store = SnapshotStore()
        self.writer = writer or FileWriter(store)
        self.appender = appender or IdempotentAppender(store)
        self.runner = runner or CommandRunner(quiet=ctx.quiet)
        self._stop_requested = False

    def request_stop(self, signum=None, frame=None) -> None:
        if not self._stop_requested:
            _warn("Stop requested; finishing the current action")
        self._stop_requested = True

    def apply(self, profile: Optional[Profile] = None) -> SessionReport:
        profile = profile or self.ctx.profile
        report = SessionReport(profile=profile.name)
        total = len(profile.actions)

        with _deferred_signals(self.request_stop):
            for seq, action in enumerate(profile.actions, 1):
                if self._stop_requested:
                    report.interrupted = True
                    report.results.append(ApplyResult(
                        seq=seq, action=action.describe(), status="skipped",
                        detail="interrupted",
                    ))
                    continue
                report.results.append(self._apply_one(seq, total, action))

        report.finished = _now()
        return report

    def _apply_one(self, seq: int, total: int, action: Action) -> ApplyResult:
        label = action.describe()
        if self.ctx.dry_run:
            _dry(f"[{seq}/{total}] {label}")
            return ApplyResult(seq=seq, action=label, status="skipped",
                               detail="dry run")

        if not self.ctx.quiet:
            _step(seq, total, label)
        try:
            status, detail = self._dispatch(action)
        except ActionError as exc:
            _error(f"{label}: {exc}")
            return ApplyResult(seq=seq, action=label, status="failed",
                               error_type=type(exc).__name__,
                               error_message=str(exc))

        if not self.ctx.quiet:
            if status == "skipped":
                _skip(f"Skipped: {detail or 'already applied'}")
            else:
                _info(f"Done{': ' + detail if detail else ''}")
        return ApplyResult(seq=seq, action=label, status=status, detail=detail)

    def _dispatch(self, action: Action) -> tuple:
        if isinstance(action, WriteFile):
            snap = self.writer.write(action.path, action.content)
            return "success", f"snapshot {snap.path}" if snap else "created"
        if isinstance(action, AppendLine):
            status = self.appender.append_if_absent(action.path, action.line)
            return status, "line already present" if status == "skipped" else None
        if isinstance(action, SetDirective):
            return self.writer.set_directive(action.path, action.key, action.line)
        if isinstance(action, SetRuntimeParam):
            return set_runtime_param(action.pattern, action.value)
        if isinstance(action, RunExternal):
            self.runner.run(action.argv)
            return "success", None
        raise TypeError(f"unsupported action: {action!r}")


# ── Rollback ─────────────────────────────────────────────────────────────────

class RollbackEngine:
    """Put originals back from the snapshots found under a search root."""

    def __init__(self, store: Optional[SnapshotStore] = None,
                 dry_run: bool = False, quiet: bool = False):
        self.store = store or SnapshotStore()
        self.dry_run = dry_run
        self.quiet = quiet

    def rollback(self, search_root=ROLLBACK_ROOT) -> RollbackReport:
        """Raises SnapshotSearchFailure if *search_root* cannot be listed."""
        report = RollbackReport(search_root=str(search_root))

        if self.dry_run:
            for original, snaps in self.store.find(search_root).items():
                _dry(f"restore {original} from {snaps[0].path}")
                report.results.append(RestoreResult(
                    original=str(original), snapshot=str(snaps[0].path),
                    status="skipped",
                    superseded=tuple(str(s.path) for s in snaps[1:]),
                ))
            return report

        report.results = self.store.restore_all(search_root)
        for result in report.results:
            if result.status == "failed":
                _error(result.error_message)
                continue
            if not self.quiet:
                _info(f"Restored {result.original}")
            if result.superseded:
                _warn(f"{result.original}: {len(result.superseded)} later "
                      f"snapshot(s) left in place")
        return report


# ── Reporting ────────────────────────────────────────────────────────────────

_STATUS_ICONS = {
    "success": _I.OK,
    "skipped": _I.SKIP,
    "failed":  _I.ERROR,
}


def print_report(report: SessionReport) -> None:
    """Print every action's outcome, failures included."""
    counts = report.counts()
    _banner(f"{_I.CHECK}  cachytune complete ({report.profile})")
    for r in report.results:
        line = f"{_STATUS_ICONS[r.status]}  {r.seq:>2}. {r.action}"
        if r.status == "failed":
            print(f"  {_C.RED}{line}{_C.RESET}  ({r.error_type}: {r.error_message})")
        elif r.status == "skipped":
            print(f"  {_C.DIM}{line}  ({r.detail}){_C.RESET}")
        else:
            print(f"  {_C.GREEN}{line}{_C.RESET}")
    print()
    _info(f"{counts['success']} applied, {counts['skipped']} skipped, "
          f"{counts['failed']} failed")
    if report.interrupted:
        _warn("Run was interrupted; remaining actions were not started")
    if report.failed:
        _warn("Failed actions can be re-run manually")
    _warn("Reboot recommended.")
    _info(f"{_I.UNDO}  To undo:    sudo cachytune --rollback")


def print_rollback_report(report: RollbackReport) -> None:
    _banner(f"{_I.CHECK}  Rollback complete ({report.search_root})")
    if not report.results:
        _info("No snapshots found")
        return
    _info(f"{len(report.restored)} restored, {len(report.failed)} failed")


# ── Confirmation ─────────────────────────────────────────────────────────────

def _confirm(ctx: SessionContext) -> None:
    """Show the profile summary and ask.  Exits 0 if the user declines."""
    if ctx.yes or ctx.dry_run:
        return

    print()
    print(f"  {_C.BOLD}You selected: {ctx.profile.name}{_C.RESET}")
    print("  This mode will apply:")
    for line in ctx.profile.summary:
        print(f"    • {line}")
    print()
    print(f"  {_C.DIM}Run --rollback afterwards to restore the original files.{_C.RESET}")
    print()
    try:
        answer = input("  Continue? [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        _info("Aborted.")
        sys.exit(0)

    if answer != "y":
        _info("Aborted.")
        sys.exit(0)


def _prompt_mode() -> str:
    print("Choose optimization mode:")
    print("1) Balanced & Safe")
    print("2) Aggressive (Maximum OS Performance)")
    try:
        return input("Enter 1 or 2: ")
    except (EOFError, KeyboardInterrupt):
        print()
        _info("Aborted.")
        sys.exit(0)


def check_privilege(dry_run: bool = False) -> None:
    if dry_run:
        return
    if os.geteuid() != 0:
        raise InsufficientPrivilege("cachytune must run as root (try: sudo cachytune)")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cachytune",
        description="Apply a Balanced or Aggressive OS tuning profile to a "
                    "CachyOS host, or roll one back.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo cachytune                          # interactive mode menu + confirm
  sudo cachytune --mode 1 -y              # Balanced, no prompts
  sudo cachytune --mode 2                 # Aggressive
  cachytune --mode 2 --dry-run            # preview without changes
  sudo cachytune --rollback               # restore every /etc snapshot
""",
    )
    p.add_argument(
        "--mode", metavar="N",
        help="1 = Balanced & Safe, 2 = Aggressive (prompted when omitted)",
    )
    p.add_argument(
        "--rollback", action="store_true",
        help="restore original files from <path>.bak.<token> snapshots",
    )
    p.add_argument(
        "--rollback-root", default=str(ROLLBACK_ROOT), metavar="DIR",
        help=f"where --rollback searches for snapshots (default: {ROLLBACK_ROOT})",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print what would happen without changing anything",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-action output; keep warnings, errors and the report",
    )
    p.add_argument(
        "--report-json", metavar="PATH",
        help="also write the session report as JSON to PATH",
    )
    return p


def run_apply(args) -> SessionReport:
    check_privilege(args.dry_run)
    choice = args.mode if args.mode is not None else _prompt_mode()
    key = select_profile(choice)

    host = detect_host()
    ctx = SessionContext(
        profile=build_profile(key, host),
        host=host,
        dry_run=args.dry_run,
        yes=args.yes,
        quiet=args.quiet,
    )

    _banner(f"{_I.ROCKET}  cachytune: {ctx.profile.name}")
    _info(f"{_I.LINUX}  CPU driver: {host.cpu_driver}, RAM: {host.ram_gb} GiB, "
          f"HugePages: {hugepages_for(host)}")
    _confirm(ctx)

    report = ProfileApplier(ctx).apply()
    print_report(report)
    if args.report_json:
        report.save(Path(args.report_json))
        _info(f"{_I.STAMP}  Report: {args.report_json}")
    return report


def run_rollback(args) -> RollbackReport:
    check_privilege(args.dry_run)
    _banner(f"{_I.UNDO}  cachytune --rollback")
    engine = RollbackEngine(dry_run=args.dry_run, quiet=args.quiet)
    report = engine.rollback(Path(args.rollback_root))
    print_rollback_report(report)
    return report


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    try:
        if args.rollback:
            run_rollback(args)
        else:
            run_apply(args)
    except PreflightError as exc:
        _error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
