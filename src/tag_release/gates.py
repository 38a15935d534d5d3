"""Quality gate execution.

The pipeline does not implement gate checks itself. A GateRunner executes one
gate for one release and reports pass or fail; run_gates_concurrently() fans a
set of gates out to a runner and joins every result.

Key Components:
    GateRunner: Protocol for gate executors
    CallableGateRunner: Gates backed by in-process checker callables
    CommandGateRunner: Gates backed by shell commands from the release config
    run_gates_concurrently: Thread pool fan-out with a join timeout

Example:
    >>> runner = CallableGateRunner({"tests": lambda release: True})
    >>> results = run_gates_concurrently(runner, [GateName.TESTS], release)
    >>> results[0].status
    <GateStatus.PASS: 'pass'>
"""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Protocol, runtime_checkable

import structlog

from tag_release.errors import UpstreamError
from tag_release.schemas.config import ReleaseConfig
from tag_release.schemas.release import GateName, GateResult, GateStatus, Release
from tag_release.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

DEFAULT_GATE_TIMEOUT_SECONDS = 600.0
DEFAULT_COMMAND_TIMEOUT_SECONDS = 300
_OUTPUT_LIMIT = 2000

GateChecker = Callable[[Release], Any]
"""Returns a bool, a mapping with a ``passed`` key, or a GateResult."""


@runtime_checkable
class GateRunner(Protocol):
    """Executes a single gate for a release.

    Implementations must be safe to call from several threads at once.
    Raising TimeoutError marks the gate as failed; any other exception is
    treated as a runner failure and aborts the gate run.
    """

    def run(self, gate: GateName, release: Release) -> GateResult:
        """Execute ``gate`` for ``release``."""
        ...


def _failed(gate: GateName, reason: str, duration_ms: int = 0, **detail: Any) -> GateResult:
    return GateResult(
        gate=gate,
        status=GateStatus.FAIL,
        duration_ms=duration_ms,
        detail={"reason": reason, **detail},
    )


class CallableGateRunner:
    """Gate runner delegating each gate to an injected checker callable.

    A gate with no registered checker fails.

    Args:
        checkers: Gate name to checker. The checker receives the Release.
    """

    def __init__(self, checkers: Mapping[GateName | str, GateChecker]) -> None:
        self._checkers = {GateName(name): checker for name, checker in checkers.items()}

    def run(self, gate: GateName, release: Release) -> GateResult:
        checker = self._checkers.get(gate)
        if checker is None:
            return _failed(gate, f"no checker registered for gate '{gate.value}'")

        start = time.monotonic()
        outcome = checker(release)
        duration_ms = int((time.monotonic() - start) * 1000)

        if isinstance(outcome, GateResult):
            return outcome
        if isinstance(outcome, bool):
            status = GateStatus.PASS if outcome else GateStatus.FAIL
            return GateResult(gate=gate, status=status, duration_ms=duration_ms)
        if isinstance(outcome, Mapping):
            detail = {k: v for k, v in outcome.items() if k != "passed"}
            status = GateStatus.PASS if outcome.get("passed") else GateStatus.FAIL
            return GateResult(gate=gate, status=status, duration_ms=duration_ms, detail=detail)

        raise TypeError(
            f"checker for gate '{gate.value}' returned {type(outcome).__name__}; "
            "expected bool, mapping or GateResult"
        )


class CommandGateRunner:
    """Gate runner executing the shell commands configured in ``gateCommands``.

    Placeholders ``{tag}``, ``{commit}``, ``{tier}`` and ``{coverage_threshold}``
    are substituted shell-quoted. Exit code 0 is a pass; a non-zero exit code
    or a timeout is a fail. A qa-approval gate with no command passes, since
    the decision is taken later by a reviewer.

    Args:
        config: Release configuration supplying commands and tier thresholds.
        timeout_seconds: Per-command timeout.
        cwd: Working directory for commands.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        cwd: str | None = None,
    ) -> None:
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._cwd = cwd
        self._log = logger.bind(runner="command")

    def render_command(self, template: str, release: Release) -> str:
        policy = self._config.tiers.get(release.tier)
        threshold = policy.coverage_threshold if policy is not None else 80
        values = {
            "tag": release.tag,
            "commit": release.commit_sha,
            "tier": release.tier,
            "coverage_threshold": str(threshold),
        }
        command = template
        for key, value in values.items():
            command = command.replace("{" + key + "}", shlex.quote(value))
        return command

    def run(self, gate: GateName, release: Release) -> GateResult:
        template = self._config.gate_commands.get(gate)
        if template is None:
            if gate == GateName.QA_APPROVAL:
                return GateResult(
                    gate=gate,
                    status=GateStatus.PASS,
                    detail={"reason": "deferred to QA review"},
                )
            return _failed(gate, f"no command configured for gate '{gate.value}'")

        command = self.render_command(template, release)
        self._log.info(
            "gate_execution_started",
            gate=gate.value,
            tag=release.tag,
            timeout_seconds=self._timeout_seconds,
        )
        start = time.monotonic()
        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self._timeout_seconds,
                cwd=self._cwd,
            )
        except subprocess.TimeoutExpired:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._log.warning(
                "gate_execution_timeout",
                gate=gate.value,
                tag=release.tag,
                duration_ms=duration_ms,
            )
            return _failed(
                gate,
                f"timed out after {self._timeout_seconds} seconds",
                duration_ms,
                timed_out=True,
            )
        except OSError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._log.error("gate_execution_error", gate=gate.value, tag=release.tag, error=str(e))
            return _failed(gate, f"gate execution error: {e}", duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        detail = {
            "exit_code": result.returncode,
            "stdout": result.stdout[-_OUTPUT_LIMIT:],
            "stderr": result.stderr[-_OUTPUT_LIMIT:],
        }
        if result.returncode == 0:
            self._log.info(
                "gate_execution_passed", gate=gate.value, tag=release.tag, duration_ms=duration_ms
            )
            return GateResult(
                gate=gate, status=GateStatus.PASS, duration_ms=duration_ms, detail=detail
            )

        self._log.warning(
            "gate_execution_failed",
            gate=gate.value,
            tag=release.tag,
            duration_ms=duration_ms,
            exit_code=result.returncode,
        )
        return GateResult(
            gate=gate,
            status=GateStatus.FAIL,
            duration_ms=duration_ms,
            detail={"reason": f"exited with code {result.returncode}", **detail},
        )


def run_gates_concurrently(
    runner: GateRunner,
    gates: Sequence[GateName],
    release: Release,
    timeout_seconds: float | None = DEFAULT_GATE_TIMEOUT_SECONDS,
    max_workers: int | None = None,
) -> list[GateResult]:
    """Run every gate concurrently and wait for all of them.

    Args:
        runner: Gate executor.
        gates: Gates to run. Results come back in this order.
        release: Release under evaluation.
        timeout_seconds: Join timeout for the whole run. Gates still running
            when it expires are reported as failed.
        max_workers: Thread pool size (defaults to one thread per gate).

    Returns:
        One GateResult per gate, in ``gates`` order.

    Raises:
        UpstreamError: If the runner raised anything other than TimeoutError.
            Raised only after every gate has settled.
    """
    if not gates:
        return []

    with create_span(
        "tag_release.gates.run",
        attributes={
            "release.tag": release.tag,
            "gates.count": len(gates),
        },
    ):
        executor = ThreadPoolExecutor(
            max_workers=max_workers or len(gates),
            thread_name_prefix="gate",
        )
        try:
            futures: list[Future[GateResult]] = [
                executor.submit(runner.run, gate, release) for gate in gates
            ]
            wait(futures, timeout=timeout_seconds)
        finally:
            # Do not block on gates that outlived the join timeout
            executor.shutdown(wait=False, cancel_futures=True)

        results: list[GateResult] = []
        failure: tuple[GateName, BaseException] | None = None
        for gate, future in zip(gates, futures):
            if future.cancelled() or not future.done():
                logger.warning("gate_join_timeout", gate=gate.value, tag=release.tag)
                results.append(
                    _failed(gate, f"timed out after {timeout_seconds} seconds", timed_out=True)
                )
                continue

            error = future.exception()
            if error is None:
                results.append(future.result())
            elif isinstance(error, TimeoutError):
                results.append(_failed(gate, f"timed out: {error}", timed_out=True))
            else:
                logger.error(
                    "gate_runner_failed",
                    gate=gate.value,
                    tag=release.tag,
                    error=str(error),
                )
                if failure is None:
                    failure = (gate, error)

        if failure is not None:
            gate, error = failure
            raise UpstreamError("gate_runner", f"gate '{gate.value}': {error}") from error

        return results


__all__ = [
    "CallableGateRunner",
    "CommandGateRunner",
    "GateChecker",
    "GateRunner",
    "run_gates_concurrently",
]
