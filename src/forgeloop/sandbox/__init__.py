"""Sandbox command execution exports."""

from forgeloop.sandbox.command_runner import CommandResult, CommandRunner, LocalCommandRunner

__all__ = ["CommandResult", "CommandRunner", "LocalCommandRunner"]
