"""
forgeloop — role tool handlers

File: src/forgeloop/synthesis_plane/tools.py
Last updated: 2026-10-18

Purpose
- Provide the side-effecting services a role calls during one turn (commands, tests, web
  requests, file writes, patches, reads) while honoring the run's budget and profile.

Functional requirements
- Commands and test runs are gated by the budget governor; a rejected request never
  reaches the command runner.
- Profiles without package-install or app-run permission refuse those command classes.
- Failing commands feed the diagnostics engine with a classified failure kind.
- Writes are confined to the workspace root and land atomically.
- An identical patch (same path and diff) is refused once it has been applied twice.
- ``to_update`` turns the accumulated effects into a ``RoleUpdate`` delta.

Non-functional requirements
- Tool failures are reported as results, not exceptions, except for contract errors
  (path escapes, oversized reads, malformed diffs) which propagate to the role.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from forgeloop.constants import MAX_READ_BYTES, MAX_REPEATED_PATCHES
from forgeloop.control_plane.budgets import (
    BudgetGovernor,
    is_heavy_command,
    is_install_command,
    policy_for,
)
from forgeloop.domain.models import (
    DiagnosticsEntry,
    DiagnosticSource,
    FunctionalCheck,
    NextStep,
    ResourceKind,
    RoleName,
    RoleUpdate,
    RunState,
    utc_now,
)
from forgeloop.integration_plane.patching import PatchSettings, apply_patch_file
from forgeloop.utils.fs import atomic_write, read_text_bounded, resolve_workspace_path
from forgeloop.utils.hashing import fingerprint, sha256_text
from forgeloop.verification_plane.classification import attach_failure_kind, classify_failure
from forgeloop.verification_plane.diagnostics import parse_diagnostics

if TYPE_CHECKING:
    from forgeloop.sandbox.command_runner import CommandResult, CommandRunner

DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[float] = 60.0
DEFAULT_TEST_TIMEOUT_SECONDS: Final[float] = 120.0
PROBE_SAMPLE_CHARS: Final[int] = 200

_PROBE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\bnpm\s+run\s+dev\b"),
    re.compile(r"\bnpm\s+start\b"),
    re.compile(r"\byarn\s+dev\b"),
    re.compile(r"\byarn\s+start\b"),
    re.compile(r"\bpnpm\s+dev\b"),
    re.compile(r"\bpnpm\s+start\b"),
    re.compile(r"\bpython3?\s+app\.py\b"),
    re.compile(r"\bpython3?\s+main\.py\b"),
    re.compile(r"\bpython3?\s+-m\s+[\w.]+\b"),
    re.compile(r"\bflet\s+run\b"),
    re.compile(r"\bgo\s+run\s+\."),
    re.compile(r"\bcargo\s+run\b"),
    re.compile(r"\bnode\s+[\w/]+\.js\b"),
    re.compile(r"\bts-node\s+[\w/]+\.ts\b"),
    re.compile(r"\bvite\b"),
)
_PROBE_EXCLUSIONS: Final[tuple[str, ...]] = ("test", "lint", "build")
_PYTHON_PROJECT_MARKERS: Final[tuple[str, ...]] = ("pyproject.toml", "setup.py", "setup.cfg")


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome handed back to the role; ``skipped`` results did not execute."""

    tool: str
    message: str
    skipped: bool = False
    command_result: CommandResult | None = None

    @property
    def ok(self) -> bool:
        if self.skipped:
            return False
        if self.command_result is None:
            return not self.message.startswith("ERROR")
        return self.command_result.succeeded

    def to_dict(self) -> dict[str, object]:
        return {
            "tool": self.tool,
            "message": self.message,
            "skipped": self.skipped,
            "command": (
                self.command_result.to_dict() if self.command_result is not None else None
            ),
        }


def is_functional_probe(command: str) -> bool:
    """True for commands that run the application rather than test, lint, or build it."""

    lowered = command.lower()
    if any(marker in lowered for marker in _PROBE_EXCLUSIONS):
        return False
    return any(pattern.search(lowered) is not None for pattern in _PROBE_PATTERNS)


def record_functional_probe(
    command: str, result: CommandResult, node: str
) -> FunctionalCheck | None:
    if not is_functional_probe(command):
        return None
    return FunctionalCheck(
        command=command,
        exit_code=result.exit_code,
        node=node,
        timestamp=utc_now(),
        stdout_sample=result.stdout[:PROBE_SAMPLE_CHARS] if result.stdout else None,
        stderr_sample=result.stderr[:PROBE_SAMPLE_CHARS] if result.stderr else None,
    )


def output_signature(output: str) -> str:
    return sha256_text(output)[:16]


@dataclass(slots=True)
class _SessionEffects:
    file_changes: dict[str, str]
    functional_checks: list[FunctionalCheck]
    diagnostics: list[DiagnosticsEntry] = field(default_factory=list)
    same_error_count: int = 0
    last_test_signature: str | None = None
    touched_tests: bool = False


class ToolSession:
    """
    Tool services for one role turn.

    The session starts from a read-only ``RunState`` snapshot and accumulates effects
    locally; nothing is written back to the run until the role returns ``to_update()``.
    Patch fingerprints may be shared across turns by passing the same mapping in.
    """

    def __init__(
        self,
        state: RunState,
        *,
        workspace_root: str | Path,
        runner: CommandRunner,
        node: RoleName | str = RoleName.CODER,
        patch_settings: PatchSettings | None = None,
        patch_fingerprints: dict[str, int] | None = None,
        command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        test_timeout_seconds: float = DEFAULT_TEST_TIMEOUT_SECONDS,
        max_read_bytes: int = MAX_READ_BYTES,
        max_repeated_patches: int = MAX_REPEATED_PATCHES,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._root = Path(workspace_root).resolve()
        self._runner = runner
        self._node = str(node)
        self._profile = state.profile
        self._policy = policy_for(state)
        self._governor = BudgetGovernor(state.budget, logger=self._logger)
        self._patch_settings = patch_settings if patch_settings is not None else PatchSettings()
        self._fingerprints = patch_fingerprints if patch_fingerprints is not None else {}
        self._command_timeout = command_timeout_seconds
        self._test_timeout = test_timeout_seconds
        self._max_read_bytes = max_read_bytes
        self._max_repeated_patches = max_repeated_patches
        self._effects = _SessionEffects(
            file_changes=dict(state.file_changes),
            functional_checks=list(state.functional_checks),
            same_error_count=state.same_error_count,
            last_test_signature=state.last_test_signature,
        )

    @classmethod
    def from_config(
        cls,
        state: RunState,
        config: Mapping[str, Any],
        *,
        runner: CommandRunner,
        node: RoleName | str = RoleName.CODER,
        patch_fingerprints: dict[str, int] | None = None,
        logger: Any | None = None,
    ) -> ToolSession:
        """Open a session rooted at ``paths.workspace_root`` with the configured limits."""

        run = config["run"]
        limits = config["limits"]
        return cls(
            state,
            workspace_root=config["paths"]["workspace_root"],
            runner=runner,
            node=node,
            patch_settings=PatchSettings.from_config(config["patching"]),
            patch_fingerprints=patch_fingerprints,
            command_timeout_seconds=float(run["command_timeout_seconds"]),
            test_timeout_seconds=float(run["test_timeout_seconds"]),
            max_read_bytes=int(limits["max_read_bytes"]),
            max_repeated_patches=int(limits["max_repeated_patches"]),
            logger=logger,
        )

    @property
    def governor(self) -> BudgetGovernor:
        return self._governor

    @property
    def file_changes(self) -> Mapping[str, str]:
        return dict(self._effects.file_changes)

    @property
    def diagnostics(self) -> tuple[DiagnosticsEntry, ...]:
        return tuple(self._effects.diagnostics)

    @property
    def patch_fingerprints(self) -> Mapping[str, int]:
        return dict(self._fingerprints)

    async def run_command(self, command: str, *, args: Sequence[str] = ()) -> ToolResult:
        if not self._policy.allow_package_installs and is_install_command(command):
            return self._skip(
                "run_command",
                f'Skipped: installs not allowed in "{self._profile}".',
                command=command,
            )
        if not self._policy.allow_app_run and is_heavy_command(command):
            return self._skip(
                "run_command",
                f'Skipped: long-running commands not allowed in "{self._profile}".',
                command=command,
            )
        decision = self._governor.check_and_consume(ResourceKind.COMMAND, command=command)
        if not decision.allowed:
            return self._skip(
                "run_command",
                f"Skipped: budget exceeded (max {decision.ceiling}).",
                command=command,
            )

        result = await self._runner.run(
            command,
            cwd=self._root,
            timeout_seconds=self._command_timeout,
            args=args,
        )
        probe = record_functional_probe(command, result, self._node)
        if probe is not None:
            self._effects.functional_checks.append(probe)
        if not result.succeeded:
            self._collect_diagnostics(result, DiagnosticSource.BUILD)
        return ToolResult("run_command", _summarize_result(result), command_result=result)

    async def run_tests(self, command: str | None = None) -> ToolResult:
        resolved = command.strip() if command and command.strip() else self._default_test_command()
        decision = self._governor.check_and_consume(ResourceKind.TEST, command=resolved)
        if not decision.allowed:
            return self._skip(
                "run_tests",
                f"Skipped: test budget exceeded (max {decision.ceiling}).",
                command=resolved,
            )

        result = await self._runner.run(
            resolved,
            cwd=self._root,
            timeout_seconds=self._test_timeout,
        )
        signature = output_signature(result.combined_output)
        effects = self._effects
        if result.succeeded:
            effects.same_error_count = 0
        elif signature == effects.last_test_signature:
            effects.same_error_count += 1
        else:
            effects.same_error_count = 0
        effects.last_test_signature = signature
        effects.touched_tests = True
        if not result.succeeded:
            self._collect_diagnostics(result, DiagnosticSource.TEST)
        return ToolResult("run_tests", _summarize_result(result), command_result=result)

    def record_web_request(self, url: str) -> ToolResult:
        decision = self._governor.check_and_consume(ResourceKind.WEB_REQUEST)
        if not decision.allowed:
            return self._skip(
                "record_web_request",
                f"Skipped: web request budget exceeded (max {decision.ceiling}).",
                command=url,
            )
        return ToolResult(
            "record_web_request",
            f"Web request allowed ({decision.used}/{decision.ceiling}).",
        )

    def write_file(self, path: str, content: str) -> ToolResult:
        if not content:
            self._logger.warning("synthesis_plane_write_without_content", path=path)
            return ToolResult("write_file", "ERROR: write_file requires 'content'.")
        target = resolve_workspace_path(self._root, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(target, content)
        self._effects.file_changes[path] = "created"
        self._logger.info("synthesis_plane_file_written", path=path, size=len(content))
        return ToolResult("write_file", "File written successfully.")

    def write_patch(self, path: str, diff: str) -> ToolResult:
        key = fingerprint(path, diff)
        repeat_count = self._fingerprints.get(key, 0)
        if repeat_count >= self._max_repeated_patches:
            self._logger.warning(
                "synthesis_plane_repeated_patch",
                path=path,
                fingerprint=key,
                count=repeat_count,
            )
            return ToolResult(
                "write_patch",
                f'ERROR: Repeated identical patch on "{path}" ({repeat_count} times). Aborting.',
            )

        target = resolve_workspace_path(self._root, path)
        self._fingerprints[key] = repeat_count + 1
        outcome = apply_patch_file(
            target,
            diff,
            settings=self._patch_settings,
            max_read_bytes=self._max_read_bytes,
            logger=self._logger,
        )
        self._effects.file_changes[path] = "patched"
        return ToolResult(
            "write_patch",
            f"Patch applied successfully ({outcome.stage.value}, {outcome.hunks_applied} hunks).",
        )

    def read_file(self, path: str) -> str:
        target = resolve_workspace_path(self._root, path)
        content = read_text_bounded(target, max_bytes=self._max_read_bytes)
        self._logger.info("synthesis_plane_file_read", path=path, size=len(content))
        return content

    def to_update(
        self,
        next_step: NextStep | str,
        reason: str,
        *,
        error: str | None = None,
        partial: bool = False,
        plan: Mapping[str, Any] | None = None,
    ) -> RoleUpdate:
        effects = self._effects
        return RoleUpdate(
            next=next_step,
            reason=reason,
            plan=plan,
            file_changes=dict(effects.file_changes),
            functional_checks=tuple(effects.functional_checks),
            budget=self._governor.state,
            diagnostics=tuple(effects.diagnostics),
            same_error_count=effects.same_error_count if effects.touched_tests else None,
            last_test_signature=effects.last_test_signature if effects.touched_tests else None,
            error=error,
            partial=partial,
        )

    def _default_test_command(self) -> str:
        if any((self._root / marker).exists() for marker in _PYTHON_PROJECT_MARKERS):
            return "pytest"
        return "npm test"

    def _collect_diagnostics(self, result: CommandResult, source: DiagnosticSource) -> None:
        kind = classify_failure(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )
        entries = parse_diagnostics(result.combined_output, source)
        self._effects.diagnostics.extend(attach_failure_kind(entries, kind))

    def _skip(self, tool: str, message: str, *, command: str | None = None) -> ToolResult:
        self._logger.info(
            "synthesis_plane_tool_skipped",
            tool=tool,
            command=command,
            profile=self._profile,
            detail=message,
        )
        return ToolResult(tool, message, skipped=True)


def _summarize_result(result: CommandResult) -> str:
    if result.timed_out:
        return f"Command timed out: {result.error}"
    if result.error is not None:
        return f"Command failed to start: {result.error}"
    return f"Exit code {result.exit_code}."


__all__ = [
    "DEFAULT_COMMAND_TIMEOUT_SECONDS",
    "DEFAULT_TEST_TIMEOUT_SECONDS",
    "PROBE_SAMPLE_CHARS",
    "ToolResult",
    "ToolSession",
    "is_functional_probe",
    "record_functional_probe",
    "output_signature",
]
