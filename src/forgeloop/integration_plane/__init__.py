"""Integration-plane public API: unified-diff validation and application."""

from forgeloop.integration_plane.patching import (
    DifflibApproximatePatcher,
    PatchApplyError,
    PatchError,
    PatchOutcome,
    PatchSettings,
    PatchStage,
    PatchValidationError,
    apply_patch_file,
    apply_patch_text,
    apply_strict,
    validate_diff_text,
)

__all__ = [
    "DifflibApproximatePatcher",
    "PatchApplyError",
    "PatchError",
    "PatchOutcome",
    "PatchSettings",
    "PatchStage",
    "PatchValidationError",
    "apply_patch_file",
    "apply_patch_text",
    "apply_strict",
    "validate_diff_text",
]
