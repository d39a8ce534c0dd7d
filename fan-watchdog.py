#!/usr/bin/env python3
"""
Fan watchdog for server motherboards.

Polls every fan*_input sensor under /sys once a second. While they stay
unreadable, escalates in two steps:

    Failed    -> (5s)  -> cold-reset the BMC        (ipmitool bmc reset cold)
    Restarted -> (10s) -> notify about dead fans    (notify_fan_failure.sh)

A single good read resets everything. If the fans never come back after a
notification, the watchdog re-arms and notifies again.

Run with --help for configuration options.

Monitor logs:
    journalctl -u fan-watchdog -f

Dependencies:
    sudo apt install ipmitool
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import shlex
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from typing import Protocol, cast

import fans

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)
log = logging.getLogger("fan-watchdog")

RESTART_THRESHOLD_SECONDS = 5.0
RECOVERY_THRESHOLD_SECONDS = 10.0
INTERVAL_SECONDS = 1.0


@dataclasses.dataclass(frozen=True, slots=True)
class Healthy:
    """No ongoing failure."""


@dataclasses.dataclass(frozen=True, slots=True)
class Failed:
    """Sensors unreadable since `since`."""

    since: float


@dataclasses.dataclass(frozen=True, slots=True)
class Restarted:
    """BMC was reset at `since`."""

    since: float


@dataclasses.dataclass(frozen=True, slots=True)
class Escalated:
    """Failure notification sent; nothing more to do until fans recover."""


FanState = Healthy | Failed | Restarted | Escalated


def transition(
    state: FanState,
    healthy: bool,
    now: float,
    restart_threshold: float = RESTART_THRESHOLD_SECONDS,
    recovery_threshold: float = RECOVERY_THRESHOLD_SECONDS,
) -> FanState:
    """Compute the next state from the current one and this tick's health.

    Thresholds are measured from the `since` of the current state.
    """
    if healthy:
        return Healthy()
    if isinstance(state, Healthy):
        return Failed(since=now)
    if isinstance(state, Failed):
        if now - state.since >= restart_threshold:
            return Restarted(since=now)
        return state
    if isinstance(state, Restarted):
        if now - state.since >= recovery_threshold:
            return Escalated()
        return state
    if isinstance(state, Escalated):
        # Still dead after notifying: start another round.
        return Restarted(since=now)
    raise TypeError("Unknown fan state: %r" % (state,))


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Remediation:
    """External command run on an escalation edge."""

    label: str
    command: tuple[str, ...]


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Watchdog configuration."""

    sysfs_root: str = "/sys"
    interval_seconds: float = INTERVAL_SECONDS
    restart_threshold_seconds: float = RESTART_THRESHOLD_SECONDS
    recovery_threshold_seconds: float = RECOVERY_THRESHOLD_SECONDS
    reset_command: tuple[str, ...] = ("ipmitool", "bmc", "reset", "cold")
    notify_command: tuple[str, ...] = ("notify_fan_failure.sh",)
    cmd_timeout_seconds: float | None = None  # None = wait forever
    verbose: bool = False

    @property
    def reset(self) -> Remediation:
        return Remediation(label="BMC reset", command=self.reset_command)

    @property
    def notify(self) -> Remediation:
        return Remediation(
            label="fan failure notification", command=self.notify_command
        )

    @classmethod
    def from_args(cls, argv: Sequence[str] | None = None) -> Config:
        """Parse command-line arguments and return Config."""
        p = argparse.ArgumentParser(
            description="Fan sensor watchdog for server motherboards",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Escalation:
  Sensors unreadable for --restart-threshold seconds  -> --reset-command
  Still unreadable --recovery-threshold seconds later -> --notify-command
  Any healthy read resets the watchdog.

  Examples:
    --reset-command "ipmitool -I lanplus -H bmc bmc reset cold"
    --notify-command "/usr/local/bin/page-oncall fans"
    --cmd-timeout 60      Give up on a hung remediation after 60s
""",
        )
        d = cls()
        _ = p.add_argument(
            "--sysfs-root",
            default=d.sysfs_root,
            help="Directory scanned for fan*_input sensors.",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=d.interval_seconds,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--restart-threshold",
            type=float,
            default=d.restart_threshold_seconds,
            help="Seconds of failure before resetting the BMC.",
        )
        _ = p.add_argument(
            "--recovery-threshold",
            type=float,
            default=d.recovery_threshold_seconds,
            help="Seconds after BMC reset before notifying.",
        )
        _ = p.add_argument(
            "--reset-command",
            default=shlex.join(d.reset_command),
            help="BMC reset command.",
        )
        _ = p.add_argument(
            "--notify-command",
            default=shlex.join(d.notify_command),
            help="Fan failure notification command.",
        )
        _ = p.add_argument(
            "--cmd-timeout",
            type=float,
            default=None,
            help="Remediation command timeout (seconds). Default: none.",
        )
        _ = p.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Log every state change and unreadable sensor.",
        )
        args = p.parse_args(argv)
        interval = cast(float, args.interval)
        restart = cast(float, args.restart_threshold)
        recovery = cast(float, args.recovery_threshold)
        timeout = cast(float | None, args.cmd_timeout)
        if interval <= 0:
            p.error("--interval must be positive")
        if restart <= 0 or recovery <= 0:
            p.error("thresholds must be positive")
        if timeout is not None and timeout <= 0:
            p.error("--cmd-timeout must be positive")
        try:
            reset = tuple(shlex.split(cast(str, args.reset_command)))
            notify = tuple(shlex.split(cast(str, args.notify_command)))
        except ValueError as e:
            p.error(str(e))
        if not reset:
            p.error("--reset-command must not be empty")
        if not notify:
            p.error("--notify-command must not be empty")
        return cls(
            sysfs_root=cast(str, args.sysfs_root),
            interval_seconds=interval,
            restart_threshold_seconds=restart,
            recovery_threshold_seconds=recovery,
            reset_command=reset,
            notify_command=notify,
            cmd_timeout_seconds=timeout,
            verbose=cast(bool, args.verbose),
        )


def remediation_for(
    state: FanState, next_state: FanState, config: Config
) -> Remediation | None:
    """Remediation to run on the state -> next_state edge, if any."""
    if isinstance(state, Failed) and isinstance(next_state, Restarted):
        return config.reset
    if isinstance(state, Restarted) and isinstance(next_state, Escalated):
        return config.notify
    return None


class Runner(Protocol):
    """Command runner protocol."""

    def run(self, name: str, args: Sequence[str]) -> bool: ...


class Subprocess:
    """Runs commands as child processes and waits for them."""

    timeout: float | None

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, name: str, args: Sequence[str]) -> bool:
        """Run command. Returns True iff it exited with status 0."""
        try:
            r = subprocess.run([name, *args], timeout=self.timeout, check=False)
        except (subprocess.SubprocessError, OSError) as e:
            log.error("Couldn't run %s: %s", name, e)
            return False
        if r.returncode != 0:
            log.error("%s exited with status %d", name, r.returncode)
            return False
        return True


class FanWatchdog:
    """Main watchdog daemon."""

    config: Config
    runner: Runner
    sensors: fans.SensorSet
    state: FanState
    running: bool

    def __init__(
        self,
        config: Config,
        runner: Runner,
        sensors: fans.SensorSet,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.runner = runner
        self.sensors = sensors
        self.state = Healthy()
        self.running = False
        self._clock = clock
        self._sleep = sleep

    def remediate(self, remediation: Remediation) -> bool:
        """Run a remediation command. Failure is logged, never raised."""
        name, *args = remediation.command
        ok = self.runner.run(name, args)
        if not ok:
            log.error("%s failed", remediation.label)
        return ok

    def tick(self) -> FanState:
        """Check sensors once, advance the state, fire any remediation."""
        cfg = self.config
        healthy = fans.is_healthy(self.sensors)
        now = self._clock()
        state = self.state
        next_state = transition(
            state,
            healthy,
            now,
            cfg.restart_threshold_seconds,
            cfg.recovery_threshold_seconds,
        )
        if next_state != state:
            log.debug("state = %s, next_state = %s", state, next_state)

        if (remediation := remediation_for(state, next_state, cfg)) is not None:
            since = cast(Failed | Restarted, state).since
            log.warning(
                "%s since %.1fs ago, running %s: %s",
                type(state).__name__,
                now - since,
                remediation.label,
                shlex.join(remediation.command),
            )
            _ = self.remediate(remediation)
        elif isinstance(state, Healthy) and isinstance(next_state, Failed):
            log.info("Fan sensors unreadable")
        elif isinstance(next_state, Healthy) and not isinstance(state, Healthy):
            log.info("Fan sensors recovered")

        self.state = next_state
        return next_state

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Stop on signal."""
        log.info("Shutting down (signal %d)", signum or 0)
        self.running = False
        sys.exit(0)

    def run(self) -> None:
        """Main daemon loop."""
        _ = signal.signal(signal.SIGTERM, self.shutdown)
        _ = signal.signal(signal.SIGINT, self.shutdown)

        cfg = self.config
        log.info(
            "Starting: sensors=%d interval=%.1fs restart=%.1fs recovery=%.1fs",
            len(self.sensors),
            cfg.interval_seconds,
            cfg.restart_threshold_seconds,
            cfg.recovery_threshold_seconds,
        )

        self.running = True
        while self.running:
            try:
                _ = self.tick()
            except Exception:
                log.exception("Watchdog loop error")

            self._sleep(cfg.interval_seconds)


def main(argv: Sequence[str] | None = None) -> None:
    config = Config.from_args(argv)
    if config.verbose:
        log.setLevel(logging.DEBUG)
    sensors = fans.discover(config.sysfs_root)
    if sensors:
        log.info("Fans: %s", ", ".join(sorted(str(p) for p in sensors)))
    else:
        log.warning("No fan sensors found under %s", config.sysfs_root)
    daemon = FanWatchdog(config, Subprocess(config.cmd_timeout_seconds), sensors)
    daemon.run()


if __name__ == "__main__":
    main()
